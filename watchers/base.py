"""
監控器基礎類別模組

定義所有監控類型共用的流程：
- 項目生命週期（新增、更新、刪除、手動檢查）
- 排程安裝與取消
- 單次檢查：重新載入設定 → 抓取 → 偵測 → 寫回狀態 → 發送通知
- 單一項目失敗不影響其他項目
"""

import asyncio
import copy
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from core.audit import AuditLog
from core.config import Settings, WatchSettings
from core.fetcher import FetchPipeline
from core.models import WatchEvent
from core.notifier import NotificationDispatcher
from core.scheduler import WatchScheduler
from core.storage import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class WatchContext:
    """監控器共用的協作物件"""
    store: KeyValueStore
    dispatcher: NotificationDispatcher
    scheduler: WatchScheduler
    pipeline: FetchPipeline
    audit: AuditLog
    settings: Settings = field(default_factory=Settings)


@dataclass
class CheckOutcome:
    """
    單次檢查的結果

    updates: 寫回項目本身的欄位
    events: 待發送的狀態轉換
    error: 失敗原因（成功時為 None）
    extra: 寫回其他集合的資料，由 commit 處理
    """
    updates: Dict[str, Any] = field(default_factory=dict)
    events: List[WatchEvent] = field(default_factory=list)
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class BaseWatcher(ABC):
    """
    監控器基礎類別

    子類別需設定 collection / model / id_prefix，並實作 source_name 與 check。
    """

    collection: str = ""
    model: Any = None
    id_prefix: str = "item"
    audit_tag: str = "system"
    defaults: Dict[str, Any] = {}

    def __init__(self, context: WatchContext):
        self.context = context
        self.store = context.store
        self.pipeline = context.pipeline
        self._in_flight: Set[str] = set()

    @property
    @abstractmethod
    def source_name(self) -> str:
        """
        返回來源名稱（rss, github, price, lottery）

        用於排程 key 與設定查詢。
        """
        pass

    @abstractmethod
    async def check(self, entity) -> CheckOutcome:
        """
        對單一項目執行抓取與偵測

        不需處理持久化；預期內的失敗以 CheckOutcome.error 返回，
        非預期的例外由 check_by_id 捕捉。

        Args:
            entity: model.from_dict 轉換後的項目

        Returns:
            CheckOutcome
        """
        pass

    def commit(self, entity, outcome: CheckOutcome) -> None:
        """項目狀態寫回後，寫入其他集合（已見項目、歷史記錄等）"""
        pass

    def on_deleted(self, entity_id: str, purge_history: bool) -> None:
        """項目刪除後清理相關資料"""
        pass

    def validate(self, entity: Dict) -> None:
        """新增前檢查必要欄位，不合法時拋出 ValueError"""
        pass

    def describe(self, event: WatchEvent) -> str:
        """稽核日誌中的事件描述"""
        return f"{event.type}: {event.entity_id}"

    @property
    def watch_settings(self) -> WatchSettings:
        return self.context.settings.for_source(self.source_name)

    def timer_key(self, entity_id: str) -> str:
        return f"{self.source_name}:{entity_id}"

    def _now(self) -> str:
        return datetime.now().isoformat()

    # ==================== 項目生命週期 ====================

    def list_entities(self) -> List[Dict]:
        return self.store.get_entities(self.collection)

    def get_entity(self, entity_id: str) -> Optional[Dict]:
        return self.store.find_entity(self.collection, entity_id)

    def add(self, data: Dict) -> Dict:
        """
        新增監控項目，啟用時立即安排排程

        Args:
            data: 項目欄位（camelCase）

        Returns:
            儲存後的項目

        Raises:
            ValueError: 欄位不合法或 ID 重複
        """
        entity = {
            **copy.deepcopy(self.defaults),
            "interval": self.watch_settings.check_interval,
            "enabled": True,
            **data,
        }
        entity["id"] = data.get("id") or f"{self.id_prefix}_{int(time.time() * 1000)}"
        entity.setdefault("createdAt", self._now())
        entity.setdefault("lastCheck", None)
        entity.setdefault("lastError", None)
        self.validate(entity)

        self.store.add_entity(self.collection, entity)
        logger.info("Added %s %s", self.source_name, entity["id"])
        if entity.get("enabled", True) is not False:
            self.schedule(entity)
        return entity

    def update(self, entity_id: str, updates: Dict) -> Optional[Dict]:
        """
        更新項目設定並重新安排排程

        Returns:
            更新後的項目；項目不存在時返回 None
        """
        updated = self.store.update_entity(self.collection, entity_id, updates)
        if updated is None:
            return None
        self.cancel(entity_id)
        if updated.get("enabled", True) is not False:
            self.schedule(updated)
        return updated

    def delete(self, entity_id: str, purge_history: bool = False) -> bool:
        """
        刪除項目、取消排程並清除相關狀態

        Args:
            purge_history: 是否一併刪除歷史記錄

        Returns:
            是否有項目被刪除
        """
        self.cancel(entity_id)
        removed = self.store.delete_entity(self.collection, entity_id)
        self.on_deleted(entity_id, purge_history)
        if removed:
            logger.info("Deleted %s %s", self.source_name, entity_id)
        return removed

    # ==================== 排程 ====================

    def schedule(self, entity: Dict, offset: float = 0) -> None:
        """
        安裝項目的計時器

        Args:
            offset: 額外的首次延遲（秒），start_all 以此錯開同類項目
        """
        settings = self.watch_settings
        interval_minutes = entity.get("interval") or settings.check_interval
        entity_id = entity["id"]
        self.context.scheduler.schedule(
            self.timer_key(entity_id),
            lambda: self.check_by_id(entity_id),
            float(interval_minutes) * 60,
            initial_delay=settings.startup_delay + offset,
        )

    def cancel(self, entity_id: str) -> bool:
        return self.context.scheduler.cancel(self.timer_key(entity_id))

    def start_all(self) -> int:
        """
        為所有啟用中的項目安排排程

        第 n 個項目的首次檢查延後 n * sweep_delay 秒，
        同間隔的計時器之後維持相同間距。

        Returns:
            已安排的項目數量
        """
        sweep_delay = self.watch_settings.sweep_delay
        count = 0
        for entity in self.list_entities():
            if entity.get("enabled", True) is False:
                continue
            self.schedule(entity, offset=count * sweep_delay)
            count += 1
        logger.info("Started %d %s watches", count, self.source_name)
        return count

    def stop_all(self) -> None:
        for entity in self.list_entities():
            self.cancel(entity["id"])

    # ==================== 檢查 ====================

    async def refresh(self, entity_id: str) -> Optional[CheckOutcome]:
        """手動檢查單一項目（停用中的項目也會檢查）"""
        return await self.check_by_id(entity_id, force=True)

    async def check_by_id(self, entity_id: str, force: bool = False) -> Optional[CheckOutcome]:
        """
        執行一次完整的檢查流程

        同一項目的上一次檢查尚未結束時，本次直接略過。

        Args:
            entity_id: 項目 ID
            force: 忽略停用狀態

        Returns:
            CheckOutcome；略過或項目不存在時返回 None
        """
        if entity_id in self._in_flight:
            logger.info("Skipping %s %s: previous check still running", self.source_name, entity_id)
            return None

        self._in_flight.add(entity_id)
        try:
            return await self._check_entity(entity_id, force)
        finally:
            self._in_flight.discard(entity_id)

    async def _check_entity(self, entity_id: str, force: bool) -> Optional[CheckOutcome]:
        raw = self.get_entity(entity_id)
        if raw is None:
            logger.info("%s %s no longer exists, cancelling timer", self.source_name, entity_id)
            self.cancel(entity_id)
            return None
        if not force and raw.get("enabled", True) is False:
            return None

        entity = self.model.from_dict(raw)
        try:
            outcome = await self.check(entity)
        except Exception as e:
            logger.exception("Check failed for %s %s", self.source_name, entity_id)
            outcome = CheckOutcome(error=str(e) or type(e).__name__)

        updates = {**outcome.updates, "lastCheck": self._now(), "lastError": outcome.error}
        saved = self.store.update_entity(self.collection, entity_id, updates)
        if saved is None:
            logger.info("%s %s was deleted during check, discarding result", self.source_name, entity_id)
            return None

        if outcome.error:
            logger.warning("[%s] %s: %s", self.source_name, entity_id, outcome.error)
            self.context.audit.error(f"检查失败 {entity_id}: {outcome.error}", self.audit_tag)

        self.commit(entity, outcome)

        for event in outcome.events:
            await self.context.dispatcher.dispatch(event)
            self.context.audit.info(self.describe(event), self.audit_tag)
        return outcome

    async def check_all(self) -> Dict[str, int]:
        """
        依序檢查所有啟用中的項目，每個項目之間間隔固定秒數

        Returns:
            統計資料 {"checked", "errors", "events"}
        """
        stats = {"checked": 0, "errors": 0, "events": 0}
        entities = [e for e in self.list_entities() if e.get("enabled", True) is not False]
        for index, entity in enumerate(entities):
            if index > 0:
                await asyncio.sleep(self.watch_settings.sweep_delay)
            outcome = await self.check_by_id(entity["id"])
            if outcome is None:
                continue
            stats["checked"] += 1
            stats["events"] += len(outcome.events)
            if outcome.error:
                stats["errors"] += 1
        logger.info("[%s] sweep finished: %s", self.source_name, stats)
        return stats
