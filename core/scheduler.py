"""
排程模組

WatchScheduler 以 key 管理每個監控項目的計時任務：
- schedule 一律先取消舊的計時器再建立新的
- 檢查本身在獨立的 task 中執行並以 shield 保護，取消計時器不會中斷進行中的檢查

另提供依 lastCheck 與間隔判斷是否到期的輔助函式。
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

CheckFactory = Callable[[], Awaitable[None]]


class WatchScheduler:
    """
    以 key 區分的週期性計時器集合

    計時器為固定頻率：每次執行的時間點以首次執行起算，
    不受檢查耗時影響；檢查超過一個間隔時直接略過錯過的時間點。
    """

    def __init__(self):
        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[asyncio.Task] = set()

    def schedule(
        self,
        key: str,
        check: CheckFactory,
        interval_seconds: float,
        initial_delay: float = 0,
    ) -> asyncio.Task:
        """
        安裝計時器：initial_delay 秒後執行一次，之後每 interval_seconds 秒執行

        Args:
            key: 計時器識別（例如 rss:sub_123）
            check: 每次呼叫返回一個 coroutine 的函式
            interval_seconds: 執行間隔（秒）
            initial_delay: 第一次執行前的等待時間（秒）

        Returns:
            計時器 task
        """
        self.cancel(key)
        timer = asyncio.create_task(
            self._run(key, check, interval_seconds, initial_delay),
            name=f"watch:{key}",
        )
        self._timers[key] = timer
        logger.debug("Scheduled %s every %ss (delay %ss)", key, interval_seconds, initial_delay)
        return timer

    def cancel(self, key: str) -> bool:
        """取消計時器；進行中的檢查會繼續完成"""
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Cancelled %s", key)
        return True

    def is_scheduled(self, key: str) -> bool:
        timer = self._timers.get(key)
        return timer is not None and not timer.done()

    def active_keys(self) -> List[str]:
        return [key for key, timer in self._timers.items() if not timer.done()]

    async def stop_all(self, wait_in_flight: bool = True) -> None:
        """
        取消所有計時器

        Args:
            wait_in_flight: 是否等待進行中的檢查完成
        """
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        if wait_in_flight and self._in_flight:
            logger.info("Waiting for %d in-flight checks", len(self._in_flight))
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _run(self, key: str, check: CheckFactory, interval_seconds: float, initial_delay: float) -> None:
        loop = asyncio.get_running_loop()
        if initial_delay > 0:
            await asyncio.sleep(initial_delay)
        next_run = loop.time()
        while True:
            task = asyncio.create_task(check(), name=f"check:{key}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Check %s raised", key)
            next_run += interval_seconds
            now = loop.time()
            if next_run < now:
                # 檢查超過一個間隔時，略過已錯過的執行
                if interval_seconds > 0:
                    next_run += ((now - next_run) // interval_seconds + 1) * interval_seconds
                else:
                    next_run = now
            await asyncio.sleep(next_run - now)


def _parse_time(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    # 統一為本地時間的 naive datetime
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def is_due(
    last_check: Union[str, datetime, None],
    interval_minutes: float,
    current_time: Optional[datetime] = None,
) -> bool:
    """
    判斷項目是否到達下次檢查時間

    Args:
        last_check: 上次檢查時間（ISO8601 字串或 datetime）
        interval_minutes: 檢查間隔（分鐘）
        current_time: 當前時間，預設為 datetime.now()

    Returns:
        bool: 無上次記錄時返回 True；否則當且僅當經過時間 >= 間隔時返回 True
    """
    if current_time is None:
        current_time = datetime.now()
    last_run = _parse_time(last_check)
    if last_run is None:
        return True
    return current_time - last_run >= timedelta(minutes=interval_minutes)


def get_next_run_time(
    last_check: Union[str, datetime, None],
    interval_minutes: float,
) -> Optional[datetime]:
    """
    取得下次預計檢查時間

    Returns:
        Optional[datetime]: 若無上次檢查記錄則返回 None
    """
    last_run = _parse_time(last_check)
    if last_run is None:
        return None
    return last_run + timedelta(minutes=interval_minutes)


def get_time_until_next_run(
    last_check: Union[str, datetime, None],
    interval_minutes: float,
    current_time: Optional[datetime] = None,
) -> Optional[timedelta]:
    """取得距離下次檢查的剩餘時間；已到期時為 0 或負值"""
    if current_time is None:
        current_time = datetime.now()
    next_run = get_next_run_time(last_check, interval_minutes)
    if next_run is None:
        return None
    return next_run - current_time
