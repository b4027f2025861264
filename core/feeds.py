"""
RSS / Atom 解析

把 feedparser 的結果整理成 ParsedFeed，並提供兩種清理工具：
- sanitize_feed_text: 處理 BOM 與文件開頭前的雜訊（原始請求用）
- extract_xml_content: 從瀏覽器渲染後的頁面中找出 XML（瀏覽器抓取用）
"""

import html
import re
from datetime import datetime, timezone
from typing import Optional, Union

import feedparser
from bs4 import BeautifulSoup

from .errors import ParseError
from .models import FeedItem, ParsedFeed

# 依優先順序嘗試的文件起始標記
FEED_MARKERS = ("<?xml", "<rss", "<feed")

XML_PROLOG = '<?xml version="1.0" encoding="UTF-8"?>'

RSS_BLOCK = re.compile(r"<rss[\s\S]*</rss>", re.I)
ATOM_BLOCK = re.compile(r"<feed[\s\S]*</feed>", re.I)
PRE_BLOCK = re.compile(r"<pre[^>]*>([\s\S]*?)</pre>", re.I)

MAX_DESCRIPTION_LENGTH = 300


def _strip_html(text: str) -> str:
    if not text or "<" not in text:
        return (text or "").strip()
    return BeautifulSoup(text, "lxml").get_text(" ", strip=True)


def _entry_content(entry) -> str:
    contents = entry.get("content") or []
    if contents:
        return contents[0].get("value", "") or ""
    return entry.get("summary", "") or ""


def parse_feed(document: Union[str, bytes]) -> ParsedFeed:
    """
    解析 RSS / Atom 文件

    Args:
        document: 文件內容（str 或 bytes）

    Returns:
        ParsedFeed

    Raises:
        ParseError: 內容不是可辨識的 feed
    """
    if isinstance(document, str):
        document = document.encode("utf-8")
    if not document or not document.strip():
        raise ParseError("Empty feed document")

    parsed = feedparser.parse(document)
    if not parsed.get("version") and not parsed.entries:
        reason = parsed.get("bozo_exception") or "unrecognised feed format"
        raise ParseError(f"Invalid feed: {reason}")

    feed_info = parsed.feed
    items = []
    for index, entry in enumerate(parsed.entries):
        link = entry.get("link", "") or ""
        content = _entry_content(entry)
        snippet = _strip_html(entry.get("summary", "") or content)
        items.append(FeedItem(
            id=entry.get("id") or link or f"item-{index}",
            title=entry.get("title") or "Untitled",
            link=link,
            description=snippet[:MAX_DESCRIPTION_LENGTH],
            pub_date=(
                entry.get("published")
                or entry.get("updated")
                or datetime.now(timezone.utc).isoformat()
            ),
            author=entry.get("author"),
            categories=[t.get("term") for t in entry.get("tags", []) if t.get("term")],
            content=content or snippet,
        ))

    return ParsedFeed(
        title=feed_info.get("title", ""),
        description=feed_info.get("subtitle", "") or feed_info.get("description", ""),
        link=feed_info.get("link", ""),
        items=items,
    )


def sanitize_feed_text(text: str) -> str:
    """
    移除 BOM、開頭空白，以及第一個文件起始標記之前的內容

    標記依 FEED_MARKERS 的順序尋找，第一個找到的即採用。
    """
    text = text.lstrip("\ufeff").lstrip()
    if text.startswith(FEED_MARKERS):
        return text
    for marker in FEED_MARKERS:
        position = text.find(marker)
        if position >= 0:
            return text[position:]
    return text


def extract_xml_content(page_html: str) -> Optional[str]:
    """
    從瀏覽器取得的頁面中找出 feed 的 XML

    Returns:
        XML 字串；找不到時返回 None
    """
    stripped = page_html.strip()
    if stripped.startswith("<?xml"):
        return stripped

    match = RSS_BLOCK.search(page_html)
    if match:
        return XML_PROLOG + match.group(0)

    match = ATOM_BLOCK.search(page_html)
    if match:
        return XML_PROLOG + match.group(0)

    # 瀏覽器以 <pre> 顯示原始 XML 的情況
    match = PRE_BLOCK.search(page_html)
    if match:
        return html.unescape(match.group(1))

    return None
