"""
Key/value storage for watch state.

Supports:
- Logical collections addressed by name (subscriptions, price_monitors, ...)
- A JSON file backend (one file per collection, atomic replace on write)
- An in-memory backend for tests

Callers perform read-modify-write inside one synchronous segment of the event
loop; there is no locking between processes.
"""

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """持久化狀態的抽象介面"""

    @abstractmethod
    def load(self, collection: str, default: Any = None) -> Any:
        """
        載入指定集合

        Args:
            collection: 集合名稱
            default: 集合不存在或無法讀取時的預設值

        Returns:
            集合資料（list 或 dict）
        """
        pass

    @abstractmethod
    def save(self, collection: str, data: Any) -> None:
        """整份覆寫指定集合"""
        pass

    # ==================== 監控項目（list 型集合） ====================

    def get_entities(self, collection: str) -> List[Dict]:
        data = self.load(collection, [])
        return data if isinstance(data, list) else []

    def find_entity(self, collection: str, entity_id: str) -> Optional[Dict]:
        for entity in self.get_entities(collection):
            if entity.get("id") == entity_id:
                return entity
        return None

    def add_entity(self, collection: str, entity: Dict) -> Dict:
        entities = self.get_entities(collection)
        if any(e.get("id") == entity["id"] for e in entities):
            raise ValueError(f"Duplicate id in {collection}: {entity['id']}")
        entities.append(entity)
        self.save(collection, entities)
        return entity

    def update_entity(self, collection: str, entity_id: str, updates: Dict) -> Optional[Dict]:
        """
        重新讀取集合後合併更新

        Returns:
            更新後的項目；若項目已被刪除則返回 None（不寫入）
        """
        entities = self.get_entities(collection)
        for index, entity in enumerate(entities):
            if entity.get("id") == entity_id:
                merged = {**entity, **updates, "id": entity_id}
                entities[index] = merged
                self.save(collection, entities)
                return merged
        return None

    def delete_entity(self, collection: str, entity_id: str) -> bool:
        entities = self.get_entities(collection)
        filtered = [e for e in entities if e.get("id") != entity_id]
        if len(filtered) == len(entities):
            return False
        self.save(collection, filtered)
        return True

    # ==================== 以項目 ID 為鍵的 dict 型集合 ====================

    def get_keyed(self, collection: str, key: str, default: Any = None) -> Any:
        data = self.load(collection, {})
        if not isinstance(data, dict):
            return default
        return data.get(key, default)

    def set_keyed(self, collection: str, key: str, value: Any) -> None:
        data = self.load(collection, {})
        if not isinstance(data, dict):
            data = {}
        data[key] = value
        self.save(collection, data)

    def delete_keyed(self, collection: str, key: str) -> bool:
        data = self.load(collection, {})
        if not isinstance(data, dict) or key not in data:
            return False
        del data[key]
        self.save(collection, data)
        return True

    def append_capped(self, collection: str, entry: Any, limit: int, newest_first: bool = False) -> None:
        """新增一筆記錄到 list 型集合，只保留最近 limit 筆"""
        data = self.load(collection, [])
        if not isinstance(data, list):
            data = []
        if newest_first:
            data.insert(0, entry)
            data = data[:limit]
        else:
            data.append(entry)
            data = data[-limit:]
        self.save(collection, data)


class JsonFileStore(KeyValueStore):
    """以 JSON 檔案儲存，每個集合一個檔案"""

    def __init__(self, data_path: str = "data"):
        self.data_path = data_path
        os.makedirs(self.data_path, exist_ok=True)

    def _path(self, collection: str) -> str:
        return os.path.join(self.data_path, f"{collection}.json")

    def load(self, collection: str, default: Any = None) -> Any:
        path = self._path(collection)
        if not os.path.exists(path):
            return copy.deepcopy(default)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error("Failed to load %s: %s", path, e)
            return copy.deepcopy(default)

    def save(self, collection: str, data: Any) -> None:
        path = self._path(collection)
        os.makedirs(self.data_path, exist_ok=True)
        # 先寫入暫存檔再取代，避免寫到一半的檔案
        with tempfile.NamedTemporaryFile(
            "w", dir=self.data_path, delete=False, encoding="utf-8", suffix=".tmp"
        ) as tmp:
            tmp_path = tmp.name
            try:
                json.dump(data, tmp, indent=2, ensure_ascii=False)
            except Exception:
                tmp.close()
                os.unlink(tmp_path)
                raise
        os.replace(tmp_path, path)


class MemoryStore(KeyValueStore):
    """記憶體內儲存（測試用）"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def load(self, collection: str, default: Any = None) -> Any:
        if collection not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[collection])

    def save(self, collection: str, data: Any) -> None:
        self._data[collection] = copy.deepcopy(data)
