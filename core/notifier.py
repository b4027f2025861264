"""
通知服務模組

- NotificationDispatcher: 偵測與發送之間的事件匯流排，處理器失敗只記錄不傳遞
- TelegramNotifier: 預設的處理器，把 WatchEvent 轉成 HTML 訊息並透過 Bot API 發送
"""

import asyncio
import html
import logging
import os
from typing import Awaitable, Callable, Dict, List, Optional

import requests

from .audit import AuditLog
from .errors import DispatchError
from .models import WatchEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[WatchEvent], Awaitable[None]]

DEFAULT_FEED_TEMPLATE = "📰 <b>{feed_title}</b>\n{title}\n{link}"

SOURCE_AUDIT_TAGS = {
    "rss": "rss",
    "github": "github",
    "price": "price",
    "lottery": "nodeseek",
}


class NotificationDispatcher:
    """
    事件匯流排

    每個事件依訂閱順序交給所有處理器；任何處理器失敗都會被記錄與稽核，
    不影響其他處理器，也不會傳回給呼叫端。
    """

    def __init__(self, audit: Optional[AuditLog] = None):
        self.audit = audit
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def handlers(self) -> List[EventHandler]:
        return list(self._handlers)

    async def dispatch(self, event: WatchEvent) -> int:
        """
        發送事件

        Returns:
            成功處理的處理器數量
        """
        delivered = 0
        for handler in self._handlers:
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.error("Handler failed for %s event of %s: %s", event.type, event.entity_id, e)
                if self.audit is not None:
                    self.audit.error(
                        f"通知发送失败 [{event.type}] {event.entity_id}: {e}",
                        SOURCE_AUDIT_TAGS.get(event.source, event.source),
                    )
        return delivered


class _SafeValues(dict):
    """模板中未知的佔位符以空字串取代"""

    def __missing__(self, key):
        return ""


def _e(value) -> str:
    return html.escape(str(value if value is not None else ""), quote=False)


def _format_price(value) -> str:
    if value is None:
        return "-"
    return f"{value:.2f}"


class TelegramNotifier:
    """Telegram 通知服務"""

    def __init__(self, bot_token: str = None, chat_id: str = None, message_template: str = None):
        self.bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
        self.chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID")
        if not self.bot_token or not self.chat_id:
            raise ValueError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set")
        self.message_template = message_template or DEFAULT_FEED_TEMPLATE

    def _send_message(self, text: str, chat_id: str = None) -> bool:
        """發送 Telegram 訊息"""
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        data = {
            "chat_id": chat_id or self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": False,
        }

        try:
            response = requests.post(url, json=data, timeout=10)
            response.raise_for_status()
            return True
        except Exception as e:
            logger.error("Failed to send Telegram message: %s", e)
            return False

    def resolve_chat(self, event: WatchEvent) -> str:
        """中獎通知發給中獎者本人，訂閱通知發給訂閱指定的聊天，其餘發給預設聊天"""
        if event.type == "lottery_winner":
            return str(event.payload.get("telegram_id") or self.chat_id)
        if event.type == "feed_item" and event.payload.get("chat_id"):
            return str(event.payload["chat_id"])
        return self.chat_id

    # ==================== 訊息格式 ====================

    def render_event(self, event: WatchEvent) -> str:
        """
        將事件轉成 HTML 訊息

        Raises:
            ValueError: 未知的事件類型
        """
        renderer = {
            "feed_item": self._render_feed_item,
            "release": self._render_release,
            "star_milestone": self._render_star_milestone,
            "price_change": self._render_price_change,
            "lottery_winner": self._render_lottery_winner,
        }.get(event.type)
        if renderer is None:
            raise ValueError(f"Unknown event type: {event.type}")
        return renderer(event.payload)

    def _render_feed_item(self, payload: Dict) -> str:
        values = _SafeValues(
            feed_title=_e(payload.get("feed_title")),
            title=_e(payload.get("title")),
            link=payload.get("link") or "",
            description=_e(payload.get("description")),
            date=_e(payload.get("date")),
        )
        return self.message_template.format_map(values)

    def _render_release(self, payload: Dict) -> str:
        message = (
            f"🚀 <b>{_e(payload.get('full_name'))}</b> 发布新版本\n\n"
            f"<b>版本:</b> {_e(payload.get('tag'))}\n"
        )
        if payload.get("name") and payload.get("name") != payload.get("tag"):
            message += f"<b>名称:</b> {_e(payload['name'])}\n"
        if payload.get("published_at"):
            message += f"<b>时间:</b> {_e(payload['published_at'])}\n"
        if payload.get("body"):
            message += f"\n<b>更新说明:</b>\n<code>{_e(payload['body'])}</code>\n"
        message += f'\n<a href="{payload.get("url", "")}">查看发布</a>'
        return message

    def _render_star_milestone(self, payload: Dict) -> str:
        return (
            f"⭐ <b>{_e(payload.get('full_name'))}</b> Star 数突破 {payload.get('milestone'):,}\n\n"
            f"当前 Star: {payload.get('stars'):,}\n"
            f'<a href="{payload.get("url", "")}">查看仓库</a>'
        )

    def _render_price_change(self, payload: Dict) -> str:
        reason = payload.get("reason")
        title = {
            "target": "🎯 达到目标价格",
            "drop": "📉 价格下降",
        }.get(reason, "💰 价格变动")

        old_price = payload.get("old_price")
        new_price = payload.get("new_price")
        price_line = f"<s>{_format_price(old_price)}</s> -> {_format_price(new_price)}" if old_price is not None \
            else _format_price(new_price)
        if payload.get("change_percent") is not None:
            price_line += f"  ({payload['change_percent']:+.1f}%)"

        message = (
            f"<b>{title}</b>\n\n"
            f"<b>{_e(payload.get('name'))}</b>\n"
            f"{price_line}\n"
        )
        if reason == "target" and payload.get("target_price") is not None:
            message += f"目标价格: {_format_price(payload['target_price'])}\n"
        message += f'<a href="{payload.get("url", "")}">查看商品</a>'
        return message

    def _render_lottery_winner(self, payload: Dict) -> str:
        return (
            f"🎉 <b>恭喜中奖!</b>\n\n"
            f"<b>抽奖:</b> {_e(payload.get('title'))}\n"
            f"<b>用户:</b> {_e(payload.get('username'))}\n"
            f"<b>奖品:</b> {_e(payload.get('prize'))}\n"
            f'<a href="{payload.get("url", "")}">查看抽奖结果</a>'
        )

    # ==================== 事件處理器 ====================

    async def handle(self, event: WatchEvent) -> None:
        """
        NotificationDispatcher 的處理器

        Raises:
            DispatchError: 訊息發送失敗
        """
        text = self.render_event(event)
        chat_id = self.resolve_chat(event)
        sent = await asyncio.to_thread(self._send_message, text, chat_id)
        if not sent:
            raise DispatchError(f"Telegram delivery failed for {event.type} ({event.entity_id})")
