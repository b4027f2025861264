#!/usr/bin/env python3
"""
監控引擎主程式

啟動 RSS、GitHub、價格、NodeSeek 抽獎四種監控，
收到 SIGINT / SIGTERM 時停止所有排程並關閉瀏覽器。
"""
import asyncio
import logging
import os
import signal
from typing import Dict

from dotenv import load_dotenv

from core.audit import AuditLog
from core.browser import close_browser, get_browser_session
from core.config import VALID_SOURCES, Settings, get_watcher_for_source, load_settings
from core.fetcher import FetchPipeline
from core.notifier import NotificationDispatcher, TelegramNotifier
from core.scheduler import WatchScheduler
from core.storage import JsonFileStore
from watchers.base import BaseWatcher, WatchContext

# 載入 .env 檔案
load_dotenv()

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_context(settings: Settings, notify: bool = True) -> WatchContext:
    """
    組裝監控器共用的協作物件

    Args:
        settings: 全域設定
        notify: 是否訂閱 Telegram 通知（dry-run 時為 False）
    """
    store = JsonFileStore(settings.data_path)
    audit = AuditLog(store)
    dispatcher = NotificationDispatcher(audit)

    if notify:
        try:
            notifier = TelegramNotifier(
                bot_token=settings.telegram_bot_token or None,
                chat_id=settings.telegram_chat_id or None,
                message_template=settings.message_template,
            )
            dispatcher.subscribe(notifier.handle)
        except ValueError as e:
            logger.warning("Telegram notifier not configured: %s", e)

    pipeline = FetchPipeline(browser=get_browser_session(settings.browser))
    return WatchContext(
        store=store,
        dispatcher=dispatcher,
        scheduler=WatchScheduler(),
        pipeline=pipeline,
        audit=audit,
        settings=settings,
    )


def build_watchers(context: WatchContext) -> Dict[str, BaseWatcher]:
    return {source: get_watcher_for_source(source, context) for source in VALID_SOURCES}


async def run() -> None:
    """主程式"""
    settings = load_settings()
    context = build_context(settings)
    watchers = build_watchers(context)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 事件迴圈不支援 add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    for watcher in watchers.values():
        watcher.start_all()
    context.audit.info("监控服务已启动", "system")
    logger.info("Watch engine running (%d timers)", len(context.scheduler.active_keys()))

    await stop_event.wait()

    logger.info("Shutting down...")
    await context.scheduler.stop_all()
    await close_browser()
    logger.info("Stopped")


def main():
    setup_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
