"""
RSS / Atom 訂閱監控

抓取 feed → 關鍵字過濾 → 與已見項目比對 → 通知新項目。
首次檢查只記錄基準，不發送通知。
"""

import logging
from datetime import datetime
from typing import Dict, List

from core.detectors import detect_feed_items
from core.filters import filter_items
from core.models import Feed, FeedItem, WatchEvent

from .base import BaseWatcher, CheckOutcome

logger = logging.getLogger(__name__)

SEEN_ITEMS_COLLECTION = "seen_items"
HISTORY_COLLECTION = "new_items_history"
HISTORY_LIMIT = 200


class FeedWatcher(BaseWatcher):
    """RSS 訂閱監控器"""

    collection = "subscriptions"
    model = Feed
    id_prefix = "sub"
    audit_tag = "rss"
    defaults = {
        "title": "Unknown",
        "keywords": {"whitelist": [], "blacklist": []},
        "isFirstCheck": True,
        "chatId": None,
    }

    @property
    def source_name(self) -> str:
        return "rss"

    def validate(self, entity: Dict) -> None:
        if not entity.get("url"):
            raise ValueError("Feed url is required")
        for existing in self.list_entities():
            if existing.get("url") == entity["url"]:
                raise ValueError(f"Feed already subscribed: {entity['url']}")

    async def check(self, feed: Feed) -> CheckOutcome:
        result = await self.pipeline.fetch_feed(feed.url)
        if not result.success:
            return CheckOutcome(error=result.error)

        parsed = result.content
        items = filter_items(parsed.items, feed.whitelist, feed.blacklist)
        seen = self.store.get_keyed(SEEN_ITEMS_COLLECTION, feed.id, [])
        new_items, seen = detect_feed_items(seen, items, feed.is_first_check)

        updates = {}
        if feed.is_first_check:
            updates["isFirstCheck"] = False
            logger.info("[rss] %s: baseline recorded (%d items)", feed.id, len(items))
        if parsed.title and feed.title in ("", "Unknown"):
            updates["title"] = parsed.title
        feed_title = updates.get("title") or feed.title

        events = [self._build_event(feed, feed_title, item) for item in new_items]
        if events:
            logger.info("[rss] %s: %d new items", feed.id, len(events))
        return CheckOutcome(
            updates=updates,
            events=events,
            extra={"seen": seen, "new_items": new_items, "feed_title": feed_title},
        )

    def _build_event(self, feed: Feed, feed_title: str, item: FeedItem) -> WatchEvent:
        return WatchEvent(
            type="feed_item",
            entity_id=feed.id,
            source=self.source_name,
            payload={
                "feed_title": feed_title,
                "title": item.title,
                "link": item.link,
                "description": item.description,
                "date": item.pub_date,
                "chat_id": feed.chat_id,
                "item": item.to_dict(),
            },
        )

    def commit(self, feed: Feed, outcome: CheckOutcome) -> None:
        if "seen" not in outcome.extra:
            return
        self.store.set_keyed(SEEN_ITEMS_COLLECTION, feed.id, outcome.extra["seen"])
        found_at = datetime.now().isoformat()
        new_items: List[FeedItem] = outcome.extra["new_items"]
        for item in new_items:
            self.store.append_capped(
                HISTORY_COLLECTION,
                {
                    **item.to_dict(),
                    "feedId": feed.id,
                    "feedTitle": outcome.extra["feed_title"],
                    "foundAt": found_at,
                },
                HISTORY_LIMIT,
                newest_first=True,
            )

    def on_deleted(self, entity_id: str, purge_history: bool) -> None:
        self.store.delete_keyed(SEEN_ITEMS_COLLECTION, entity_id)
        if purge_history:
            history = self.store.load(HISTORY_COLLECTION, [])
            self.store.save(HISTORY_COLLECTION, [h for h in history if h.get("feedId") != entity_id])

    def describe(self, event: WatchEvent) -> str:
        return f"新内容: [{event.payload['feed_title']}] {event.payload['title']}"

    def get_history(self, limit: int = HISTORY_LIMIT) -> List[Dict]:
        return self.store.load(HISTORY_COLLECTION, [])[:limit]
