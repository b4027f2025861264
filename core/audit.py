"""
稽核日誌

偵測到的狀態轉換與各項目的失敗都會寫入 logs 集合，供管理介面顯示。
寫入失敗只記錄到 logger，不會中斷檢查流程。
"""

import logging
import random
import string
import time
from datetime import datetime
from typing import Dict, List

from .storage import KeyValueStore

logger = logging.getLogger(__name__)

LOGS_COLLECTION = "logs"
MAX_LOGS = 1000


class AuditLog:
    """稽核日誌寫入器"""

    def __init__(self, store: KeyValueStore, max_entries: int = MAX_LOGS):
        self.store = store
        self.max_entries = max_entries

    def add(self, level: str, message: str, source: str = "system") -> None:
        """
        新增一筆日誌

        Args:
            level: info / warn / error
            message: 日誌內容
            source: 來源標籤（rss, github, price, nodeseek）
        """
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        entry = {
            "id": f"log_{int(time.time() * 1000)}_{suffix}",
            "level": level,
            "message": message,
            "source": source,
            "timestamp": datetime.now().isoformat(),
        }
        try:
            self.store.append_capped(LOGS_COLLECTION, entry, self.max_entries)
        except Exception as e:
            logger.warning("Failed to write audit log (%s): %s", source, e)

    def info(self, message: str, source: str = "system") -> None:
        self.add("info", message, source)

    def error(self, message: str, source: str = "system") -> None:
        self.add("error", message, source)

    def entries(self) -> List[Dict]:
        return self.store.load(LOGS_COLLECTION, [])
