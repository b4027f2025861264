"""
商品價格監控

以 CSS 選擇器從商品頁面提取價格，依通知規則判斷是否通知。
提取失敗時記錄錯誤，不改動上次的價格。
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from core.detectors import evaluate_price
from core.models import PriceWatch, WatchEvent

from .base import BaseWatcher, CheckOutcome

logger = logging.getLogger(__name__)

HISTORY_COLLECTION = "price_history"
HISTORY_LIMIT = 100

CURRENCY_CHARS = re.compile(r"[¥$€£￥\s,]")
NUMBER_PATTERN = re.compile(r"(\d+\.?\d*)")


def parse_price(text: str) -> Optional[float]:
    """
    從價格文字中取出數值

    Examples:
        "¥1,299.00" -> 1299.0
        "US $ 19.99" -> 19.99
    """
    if not text:
        return None
    cleaned = CURRENCY_CHARS.sub("", text)
    match = NUMBER_PATTERN.search(cleaned)
    if not match:
        return None
    return float(match.group(1))


def extract_price(page_html: str, selector: str) -> Optional[float]:
    """
    以選擇器取出價格

    優先使用元素文字，沒有文字時改用 content 或 data-price 屬性。
    """
    soup = BeautifulSoup(page_html or "", "lxml")
    elements = soup.select(selector)
    if not elements:
        return None

    text = "".join(el.get_text() for el in elements).strip()
    if not text:
        first = elements[0]
        text = first.get("content") or first.get("data-price") or ""
    return parse_price(text)


class PriceWatcher(BaseWatcher):
    """商品價格監控器"""

    collection = "price_monitors"
    model = PriceWatch
    id_prefix = "price"
    audit_tag = "price"
    defaults = {
        "name": "未命名商品",
        "targetPrice": None,
        "notifyOnAnyChange": True,
        "notifyOnDrop": False,
        "dropThreshold": 0,
        "currentPrice": None,
        "lastPrice": None,
    }

    @property
    def source_name(self) -> str:
        return "price"

    def validate(self, entity: Dict) -> None:
        if not entity.get("url") or not entity.get("selector"):
            raise ValueError("url and selector are required")

    async def check(self, watch: PriceWatch) -> CheckOutcome:
        result = await self.pipeline.fetch_text(watch.url)
        if not result.success:
            return CheckOutcome(error=result.error)

        price = extract_price(result.content, watch.selector)
        if price is None:
            return CheckOutcome(error="无法提取价格")

        transition, updates = evaluate_price(watch, price)
        events = []
        if transition:
            logger.info("[price] %s: %s -> %s (%s)", watch.name, transition["old_price"], price, transition["reason"])
            events.append(WatchEvent(
                type="price_change",
                entity_id=watch.id,
                source=self.source_name,
                payload={"name": watch.name, "url": watch.url, **transition},
            ))
        else:
            logger.info("[price] %s: current price %s", watch.name, price)
        return CheckOutcome(updates=updates, events=events, extra={"price": price})

    def commit(self, watch: PriceWatch, outcome: CheckOutcome) -> None:
        if "price" not in outcome.extra:
            return
        history = self.store.get_keyed(HISTORY_COLLECTION, watch.id, [])
        history.append({"price": outcome.extra["price"], "timestamp": datetime.now().isoformat()})
        self.store.set_keyed(HISTORY_COLLECTION, watch.id, history[-HISTORY_LIMIT:])

    def on_deleted(self, entity_id: str, purge_history: bool) -> None:
        if purge_history:
            self.store.delete_keyed(HISTORY_COLLECTION, entity_id)

    def get_history(self, entity_id: str) -> List[Dict]:
        return self.store.get_keyed(HISTORY_COLLECTION, entity_id, [])

    def describe(self, event: WatchEvent) -> str:
        payload = event.payload
        return f"价格变动: {payload['name']} {payload['old_price']} -> {payload['new_price']}"
