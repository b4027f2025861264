"""
NodeSeek 抽獎監控

解析抽獎結果頁的中獎者，對已綁定 NodeSeek 帳號的訂閱者發送中獎通知。
每個 (抽獎, 用戶名) 只通知一次；無法對應到訂閱者的中獎者直接略過。
"""

import logging
import re
from typing import Dict, Optional

from core.detectors import detect_new_winners
from core.fetcher import HTML_HEADERS
from core.models import LotteryWatch, WatchEvent
from core.storage import KeyValueStore
from core.winners import extract_winners

from .base import BaseWatcher, CheckOutcome

logger = logging.getLogger(__name__)

WINNERS_COLLECTION = "lottery_winners"
BINDINGS_COLLECTION = "user_bindings"

LUCKY_URL = "https://www.nodeseek.com/lucky?post={post_id}"
POST_URL = "https://www.nodeseek.com/post-{post_id}-1"
LOTTERY_HEADERS = {**HTML_HEADERS, "Referer": "https://www.nodeseek.com/"}

POST_ID_PATTERNS = (
    re.compile(r"post-(\d+)"),
    re.compile(r"[?&]post=(\d+)"),
    re.compile(r"^(\d+)$"),
)


def parse_post_id(value: str) -> Optional[str]:
    """從帖子網址、lucky 網址或純數字取出帖子 ID"""
    value = str(value or "").strip()
    for pattern in POST_ID_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    return None


def build_lucky_url(post_id: str, saved_url: Optional[str] = None) -> str:
    """已保存的網址含 lucky 時直接使用，否則依帖子 ID 組出結果頁網址"""
    if saved_url and "lucky" in saved_url:
        return saved_url
    return LUCKY_URL.format(post_id=post_id)


class SubscriberDirectory:
    """NodeSeek 用戶名與 Telegram 用戶的綁定（user_bindings: {telegramId: username}）"""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def bind(self, telegram_id: str, username: str) -> None:
        self.store.set_keyed(BINDINGS_COLLECTION, str(telegram_id), username)

    def unbind(self, telegram_id: str) -> bool:
        return self.store.delete_keyed(BINDINGS_COLLECTION, str(telegram_id))

    def find_subscriber_by_external_username(self, username: str) -> Optional[str]:
        """
        以 NodeSeek 用戶名查詢 Telegram ID（不分大小寫）

        Returns:
            Telegram ID；未綁定時返回 None
        """
        if not username:
            return None
        target = username.lower()
        bindings = self.store.load(BINDINGS_COLLECTION, {})
        for telegram_id, bound in bindings.items():
            if isinstance(bound, str) and bound.lower() == target:
                return telegram_id
        return None


class LotteryWatcher(BaseWatcher):
    """NodeSeek 抽獎監控器"""

    collection = "lottery_watches"
    model = LotteryWatch
    id_prefix = "lottery"
    audit_tag = "nodeseek"
    defaults = {
        "title": "",
        "luckyUrl": None,
        "render": False,
    }

    def __init__(self, context, directory: Optional[SubscriberDirectory] = None):
        super().__init__(context)
        self.directory = directory or SubscriberDirectory(context.store)

    @property
    def source_name(self) -> str:
        return "lottery"

    def validate(self, entity: Dict) -> None:
        post_id = parse_post_id(entity.get("postId") or entity.get("luckyUrl") or entity.get("url", ""))
        if post_id is None:
            raise ValueError("postId is required")
        entity["postId"] = post_id
        if not entity.get("title"):
            entity["title"] = f"#{post_id}"
        for existing in self.list_entities():
            if str(existing.get("postId")) == post_id:
                raise ValueError(f"Lottery already watched: #{post_id}")

    async def check(self, watch: LotteryWatch) -> CheckOutcome:
        url = build_lucky_url(watch.post_id, watch.lucky_url)
        logger.info("[lottery] checking %s (%s)", watch.title, url)

        result = await self.pipeline.fetch_text(url, headers=LOTTERY_HEADERS, use_browser=watch.render)
        if not result.success:
            return CheckOutcome(error=result.error)

        winners = extract_winners(result.content)
        if not winners:
            logger.info("[lottery] %s: no winners yet", watch.title)
            return CheckOutcome(updates={"winnerCount": 0})

        notified = self.store.get_keyed(WINNERS_COLLECTION, watch.id, [])
        matches, notified = detect_new_winners(
            notified, winners, self.directory.find_subscriber_by_external_username
        )
        events = [
            WatchEvent(
                type="lottery_winner",
                entity_id=watch.id,
                source=self.source_name,
                payload={
                    "title": watch.title,
                    "post_id": watch.post_id,
                    "username": winner.username,
                    "prize": winner.prize,
                    "telegram_id": telegram_id,
                    "url": url,
                    "post_url": POST_URL.format(post_id=watch.post_id),
                },
            )
            for winner, telegram_id in matches
        ]
        logger.info("[lottery] %s: %d winners, %d to notify", watch.title, len(winners), len(events))
        extra = {"notified": notified} if matches else {}
        return CheckOutcome(updates={"winnerCount": len(winners)}, events=events, extra=extra)

    def commit(self, watch: LotteryWatch, outcome: CheckOutcome) -> None:
        if "notified" in outcome.extra:
            self.store.set_keyed(WINNERS_COLLECTION, watch.id, outcome.extra["notified"])

    def on_deleted(self, entity_id: str, purge_history: bool) -> None:
        self.store.delete_keyed(WINNERS_COLLECTION, entity_id)

    def describe(self, event: WatchEvent) -> str:
        return f"中奖通知: {event.payload['username']} 在 #{event.payload['post_id']} 中奖"
