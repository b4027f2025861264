"""
關鍵字過濾

白名單非空時至少需命中一個；黑名單非空時命中任何一個即排除。
比對範圍為 title + description + content，不分大小寫。
"""

from typing import Iterable, List, Optional

from .models import FeedItem


def _haystack(item: FeedItem) -> str:
    return f"{item.title} {item.description} {item.content}".lower()


def matches_keywords(
    item: FeedItem,
    whitelist: Optional[Iterable[str]] = None,
    blacklist: Optional[Iterable[str]] = None,
) -> bool:
    text = _haystack(item)
    allowed = [kw.lower() for kw in (whitelist or []) if kw]
    denied = [kw.lower() for kw in (blacklist or []) if kw]

    if allowed and not any(kw in text for kw in allowed):
        return False
    if denied and any(kw in text for kw in denied):
        return False
    return True


def filter_items(
    items: List[FeedItem],
    whitelist: Optional[Iterable[str]] = None,
    blacklist: Optional[Iterable[str]] = None,
) -> List[FeedItem]:
    """套用關鍵字過濾，保留原順序"""
    whitelist = list(whitelist or [])
    blacklist = list(blacklist or [])
    if not whitelist and not blacklist:
        return list(items)
    return [item for item in items if matches_keywords(item, whitelist, blacklist)]
