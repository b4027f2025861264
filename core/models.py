"""
監控項目資料模型

持久化的 JSON 物件使用 camelCase 欄位（與管理介面共用），
在引擎內部轉為 dataclass 使用。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Feed:
    """RSS / Atom 訂閱"""
    id: str
    url: str
    title: str = "Unknown"
    interval: float = 30
    enabled: bool = True
    whitelist: List[str] = field(default_factory=list)
    blacklist: List[str] = field(default_factory=list)
    is_first_check: bool = True
    chat_id: Optional[str] = None
    last_check: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "Feed":
        keywords = data.get("keywords") or {}
        return cls(
            id=data["id"],
            url=data.get("url", ""),
            title=data.get("title") or "Unknown",
            interval=data.get("interval") or 30,
            enabled=data.get("enabled", True) is not False,
            whitelist=list(keywords.get("whitelist") or []),
            blacklist=list(keywords.get("blacklist") or []),
            is_first_check=bool(data.get("isFirstCheck", False)),
            chat_id=data.get("chatId"),
            last_check=data.get("lastCheck"),
            last_error=data.get("lastError"),
        )


@dataclass
class RepoWatch:
    """GitHub 倉庫監控"""
    id: str
    owner: str
    repo: str
    full_name: str = ""
    watch_types: List[str] = field(default_factory=lambda: ["release"])
    interval: float = 10
    enabled: bool = True
    last_release_tag: Optional[str] = None
    last_star_count: Optional[int] = None
    last_check: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    @classmethod
    def from_dict(cls, data: Dict) -> "RepoWatch":
        last_release = data.get("lastRelease") or {}
        last_star = data.get("lastStar")
        return cls(
            id=data["id"],
            owner=data.get("owner", ""),
            repo=data.get("repo", ""),
            full_name=data.get("fullName") or f"{data.get('owner', '')}/{data.get('repo', '')}",
            watch_types=list(data.get("watchTypes") or ["release"]),
            interval=data.get("interval") or 10,
            enabled=data.get("enabled", True) is not False,
            last_release_tag=last_release.get("tag"),
            last_star_count=int(last_star) if last_star is not None else None,
            last_check=data.get("lastCheck"),
            last_error=data.get("lastError"),
        )


@dataclass
class PriceWatch:
    """商品價格監控"""
    id: str
    url: str
    selector: str
    name: str = "未命名商品"
    interval: float = 60
    enabled: bool = True
    notify_on_any_change: bool = True
    notify_on_drop: bool = False
    drop_threshold: float = 0
    target_price: Optional[float] = None
    current_price: Optional[float] = None
    last_price: Optional[float] = None
    last_check: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "PriceWatch":
        return cls(
            id=data["id"],
            url=data.get("url", ""),
            selector=data.get("selector", ""),
            name=data.get("name") or "未命名商品",
            interval=data.get("interval") or 60,
            enabled=data.get("enabled", True) is not False,
            notify_on_any_change=data.get("notifyOnAnyChange", True) is not False,
            notify_on_drop=bool(data.get("notifyOnDrop", False)),
            drop_threshold=_as_float(data.get("dropThreshold")) or 0,
            target_price=_as_float(data.get("targetPrice")),
            current_price=_as_float(data.get("currentPrice")),
            last_price=_as_float(data.get("lastPrice")),
            last_check=data.get("lastCheck"),
            last_error=data.get("lastError"),
        )


@dataclass
class LotteryWatch:
    """NodeSeek 抽獎帖監控"""
    id: str
    post_id: str
    title: str = ""
    lucky_url: Optional[str] = None
    interval: float = 5
    enabled: bool = True
    render: bool = False
    last_check: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "LotteryWatch":
        post_id = str(data.get("postId") or data["id"])
        return cls(
            id=data["id"],
            post_id=post_id,
            title=data.get("title") or f"#{post_id}",
            lucky_url=data.get("luckyUrl"),
            interval=data.get("interval") or 5,
            enabled=data.get("enabled", True) is not False,
            render=bool(data.get("render", False)),
            last_check=data.get("lastCheck"),
            last_error=data.get("lastError"),
        )


@dataclass
class FeedItem:
    """Feed 中的單一項目"""
    id: str
    title: str = "Untitled"
    link: str = ""
    description: str = ""
    pub_date: str = ""
    author: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    content: str = ""

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "title": self.title,
            "link": self.link,
            "description": self.description,
            "pubDate": self.pub_date,
            "author": self.author,
            "categories": self.categories,
            "content": self.content,
        }


@dataclass
class ParsedFeed:
    title: str
    description: str = ""
    link: str = ""
    items: List[FeedItem] = field(default_factory=list)


@dataclass
class Winner:
    """抽獎中獎者"""
    username: str
    prize: str = "中奖"
    position: int = 0


@dataclass
class WatchEvent:
    """
    偵測到的狀態轉換（即一則待發送的通知）

    type: feed_item / release / star_milestone / price_change / lottery_winner
    """
    type: str
    entity_id: str
    source: str
    payload: Dict[str, Any] = field(default_factory=dict)
