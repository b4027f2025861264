"""
抓取流程模組

把 URL 轉成內容，對呼叫端隱藏封鎖、驗證挑戰、格式錯誤等傳輸層問題。

Feed 採三層策略：
1. 直接請求並解析
2. 原始請求，清理 BOM 與開頭雜訊後重新解析（403 時略過）
3. 無頭瀏覽器渲染後擷取 XML

其他監控類型使用單層的 fetch_text / fetch_json。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional

import requests

from .errors import FetchError, FetchErrorKind, ForbiddenError, NotFoundError, ParseError, TransportError
from .feeds import extract_xml_content, parse_feed, sanitize_feed_text

logger = logging.getLogger(__name__)

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

FEED_HEADERS = {
    "User-Agent": BROWSER_UA,
    "Accept": "application/rss+xml, application/xml, text/xml, */*",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
}

HTML_HEADERS = {
    "User-Agent": BROWSER_UA,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
}

DEFAULT_TIMEOUT = (10, 30)  # (connect, read) seconds


@dataclass
class FetchResult:
    """抓取結果：成功時帶 content，失敗時帶 error 與 kind"""
    success: bool
    content: Any = None
    error: Optional[str] = None
    kind: Optional[FetchErrorKind] = None
    strategy: Optional[str] = None

    @classmethod
    def ok(cls, content: Any, strategy: Optional[str] = None) -> "FetchResult":
        return cls(success=True, content=content, strategy=strategy)

    @classmethod
    def fail(cls, kind: FetchErrorKind, error: str, strategy: Optional[str] = None) -> "FetchResult":
        return cls(success=False, error=error, kind=kind, strategy=strategy)


class HttpClient:
    """requests 的包裝，將 HTTP 狀態碼轉為 FetchError"""

    def __init__(self, session: Optional[requests.Session] = None, timeout=DEFAULT_TIMEOUT):
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": BROWSER_UA})
        self.session = session
        self.timeout = timeout

    def get(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e

        status = response.status_code
        if status == 403:
            raise ForbiddenError()
        if status == 404:
            raise NotFoundError()
        if status >= 400:
            raise TransportError(f"HTTP {status}", status_code=status)
        return response

    async def aget(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """在工作執行緒中執行請求，不阻塞事件迴圈"""
        return await asyncio.to_thread(self.get, url, headers)


class FetchPipeline:
    """
    分層抓取流程

    Args:
        http: HttpClient
        browser: 提供 async fetch(url) -> FetchResult 的瀏覽器工作階段（可為 None）
    """

    def __init__(self, http: Optional[HttpClient] = None, browser=None):
        self.http = http or HttpClient()
        self.browser = browser

    async def _attempt(self, strategy: str, url: str, step: Awaitable) -> FetchResult:
        try:
            content = await step
            return FetchResult.ok(content, strategy=strategy)
        except FetchError as e:
            logger.info("[%s] %s failed: %s", strategy, url, e)
            return FetchResult.fail(e.kind, str(e), strategy=strategy)
        except Exception as e:
            logger.exception("[%s] unexpected error for %s", strategy, url)
            return FetchResult.fail(FetchErrorKind.UNKNOWN, str(e), strategy=strategy)

    # ==================== Feed 三層策略 ====================

    async def fetch_feed(self, url: str) -> FetchResult:
        """
        抓取並解析 feed

        Returns:
            FetchResult，content 為 ParsedFeed
        """
        result = await self._attempt("direct", url, self._direct_feed(url))
        if result.success:
            return result

        if result.kind is not FetchErrorKind.FORBIDDEN:
            result = await self._attempt("sanitized", url, self._sanitized_feed(url))
            if result.success:
                return result

        return await self._attempt("browser", url, self._browser_feed(url))

    async def _direct_feed(self, url: str):
        response = await self.http.aget(url, FEED_HEADERS)
        return parse_feed(response.content)

    async def _sanitized_feed(self, url: str):
        response = await self.http.aget(url, FEED_HEADERS)
        return parse_feed(sanitize_feed_text(response.text))

    async def _browser_feed(self, url: str):
        if self.browser is None:
            raise TransportError("Browser fallback unavailable")
        rendered = await self.browser.fetch(url)
        if not rendered.success:
            raise TransportError(rendered.error or "Browser fetch failed")
        xml = extract_xml_content(rendered.content)
        if xml is None:
            raise ParseError("Unable to locate XML content in rendered page")
        return parse_feed(xml)

    # ==================== 單層抓取 ====================

    async def fetch_text(self, url: str, headers: Optional[Dict[str, str]] = None, use_browser: bool = False) -> FetchResult:
        """
        抓取頁面 HTML

        Args:
            use_browser: 直接以瀏覽器渲染（需要執行腳本的頁面）
        """
        if use_browser:
            return await self._attempt("browser", url, self._browser_text(url))
        return await self._attempt("direct", url, self._direct_text(url, headers or HTML_HEADERS))

    async def _direct_text(self, url: str, headers: Dict[str, str]) -> str:
        response = await self.http.aget(url, headers)
        return response.text

    async def _browser_text(self, url: str) -> str:
        if self.browser is None:
            raise TransportError("Browser fallback unavailable")
        rendered = await self.browser.fetch(url)
        if not rendered.success:
            raise TransportError(rendered.error or "Browser fetch failed")
        return rendered.content

    async def fetch_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> FetchResult:
        """抓取 JSON API；404 以 FetchErrorKind.NOT_FOUND 返回"""
        return await self._attempt("direct", url, self._direct_json(url, headers))

    async def _direct_json(self, url: str, headers: Optional[Dict[str, str]]):
        response = await self.http.aget(url, headers)
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Invalid JSON from {url}: {e}") from e
