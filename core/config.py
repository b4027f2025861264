"""
設定檔載入模組

預設值 → data/config.json → 環境變數，依序覆蓋。
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# 預設值定義（間隔單位：分鐘）
DEFAULT_SETTINGS = {
    "data_path": "data",
    "telegram_bot_token": "",
    "telegram_chat_id": "",
    "github_token": "",
    "sweep_delay_seconds": 2,
    "watchers": {
        "rss": {"check_interval": 30, "startup_delay": 0},
        "price": {"check_interval": 60, "startup_delay": 0},
        "github": {"check_interval": 10, "startup_delay": 30},
        "lottery": {"check_interval": 5, "startup_delay": 0},
    },
    "rss": {
        "message_template": "📰 <b>{feed_title}</b>\n{title}\n{link}",
    },
    "browser": {
        "executable_path": None,
        "headless": True,
        "page_timeout_ms": 30000,
        "max_challenge_attempts": 12,
        "challenge_wait_seconds": 5,
    },
}

# 環境變數到設定欄位的映射
ENV_OVERRIDES = {
    "DATA_PATH": "data_path",
    "TELEGRAM_BOT_TOKEN": "telegram_bot_token",
    "TELEGRAM_CHAT_ID": "telegram_chat_id",
    "GITHUB_TOKEN": "github_token",
}

VALID_SOURCES = ("rss", "github", "price", "lottery")


@dataclass
class WatchSettings:
    """單一監控類型的排程設定"""
    check_interval: float
    startup_delay: float = 0
    sweep_delay: float = 2


def _default_watchers() -> Dict[str, WatchSettings]:
    return {
        source: WatchSettings(**values, sweep_delay=DEFAULT_SETTINGS["sweep_delay_seconds"])
        for source, values in DEFAULT_SETTINGS["watchers"].items()
    }


@dataclass
class BrowserSettings:
    """無頭瀏覽器設定"""
    executable_path: Optional[str] = None
    headless: bool = True
    page_timeout_ms: int = 30000
    max_challenge_attempts: int = 12
    challenge_wait_seconds: float = 5


@dataclass
class Settings:
    """全域設定"""
    data_path: str = "data"
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    github_token: str = ""
    message_template: str = DEFAULT_SETTINGS["rss"]["message_template"]
    watchers: Dict[str, WatchSettings] = field(default_factory=_default_watchers)
    browser: BrowserSettings = field(default_factory=BrowserSettings)

    def for_source(self, source: str) -> WatchSettings:
        if source not in VALID_SOURCES:
            raise ValueError(f"Unknown source: {source}. Valid sources: {list(VALID_SOURCES)}")
        return self.watchers[source]


def _deep_merge(base: Dict, override: Dict) -> Dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_settings(config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """
    載入設定

    Args:
        config_path: 設定檔路徑，預設為 <DATA_PATH>/config.json
        env: 環境變數（測試用），預設為 os.environ

    Returns:
        Settings: 合併後的設定物件
    """
    env = os.environ if env is None else env
    data_path = env.get("DATA_PATH") or DEFAULT_SETTINGS["data_path"]
    config_path = config_path or os.path.join(data_path, "config.json")

    file_data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                file_data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error("Failed to load settings from %s: %s", config_path, e)

    merged = _deep_merge(copy.deepcopy(DEFAULT_SETTINGS), file_data)

    for env_name, key in ENV_OVERRIDES.items():
        if env.get(env_name):
            merged[key] = env[env_name]
    if env.get("BROWSER_EXECUTABLE_PATH"):
        merged["browser"]["executable_path"] = env["BROWSER_EXECUTABLE_PATH"]
    if env.get("BROWSER_HEADLESS"):
        merged["browser"]["headless"] = _truthy(env["BROWSER_HEADLESS"])

    sweep_delay = merged.get("sweep_delay_seconds", 2)
    watchers = {
        source: WatchSettings(
            check_interval=merged["watchers"][source]["check_interval"],
            startup_delay=merged["watchers"][source].get("startup_delay", 0),
            sweep_delay=sweep_delay,
        )
        for source in VALID_SOURCES
    }

    return Settings(
        data_path=merged["data_path"],
        telegram_bot_token=merged["telegram_bot_token"],
        telegram_chat_id=str(merged["telegram_chat_id"] or ""),
        github_token=merged["github_token"],
        message_template=merged["rss"]["message_template"],
        watchers=watchers,
        browser=BrowserSettings(**merged["browser"]),
    )


def get_watcher_for_source(source: str, context):
    """
    根據來源名稱取得對應的監控器實例

    Args:
        source: 來源名稱 (rss, github, price, lottery)
        context: WatchContext

    Raises:
        ValueError: 當來源名稱無效時
    """
    if source == "rss":
        from watchers.rss import FeedWatcher
        return FeedWatcher(context)
    elif source == "github":
        from watchers.github import RepoWatcher
        return RepoWatcher(context)
    elif source == "price":
        from watchers.price import PriceWatcher
        return PriceWatcher(context)
    elif source == "lottery":
        from watchers.lottery import LotteryWatcher
        return LotteryWatcher(context)
    else:
        raise ValueError(f"Unknown source: {source}")
