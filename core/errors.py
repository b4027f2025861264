"""
錯誤分類模組

抓取流程與通知流程共用的例外類別。
抓取錯誤以 FetchErrorKind 標記種類，升級策略依種類判斷，而非比對錯誤訊息。
"""

from enum import Enum


class FetchErrorKind(str, Enum):
    """抓取錯誤種類"""
    TRANSPORT = "transport"
    FORBIDDEN = "forbidden"
    PARSE = "parse"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class FetchError(Exception):
    """抓取過程中發生的錯誤"""
    kind = FetchErrorKind.UNKNOWN


class TransportError(FetchError):
    """網路錯誤、逾時或非預期的 HTTP 狀態碼"""
    kind = FetchErrorKind.TRANSPORT

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ForbiddenError(TransportError):
    """明確的封鎖回應（HTTP 403），直接改用瀏覽器抓取"""
    kind = FetchErrorKind.FORBIDDEN

    def __init__(self, message: str = "HTTP 403 Forbidden"):
        super().__init__(message, status_code=403)


class NotFoundError(TransportError):
    """資源不存在（HTTP 404），視為「沒有資料」"""
    kind = FetchErrorKind.NOT_FOUND

    def __init__(self, message: str = "HTTP 404 Not Found"):
        super().__init__(message, status_code=404)


class ParseError(FetchError):
    """內容格式錯誤，無法解析"""
    kind = FetchErrorKind.PARSE


class DispatchError(Exception):
    """通知發送失敗"""
    pass
