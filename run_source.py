#!/usr/bin/env python3
"""
單一來源執行腳本

對指定來源執行一次完整檢查（或只檢查單一項目），用於排程系統或手動執行。
"""
import argparse
import asyncio
import logging
import sys

from core.browser import close_browser
from core.config import VALID_SOURCES, get_watcher_for_source, load_settings
from core.scheduler import get_next_run_time, is_due
from main import build_context, setup_logging

logger = logging.getLogger(__name__)


async def run_source(source: str, entity_id: str = None, dry_run: bool = False) -> bool:
    """
    執行單一來源的檢查

    Args:
        source: 來源名稱 (rss, github, price, lottery)
        entity_id: 只檢查指定項目
        dry_run: 是否為測試模式（不發送通知）

    Returns:
        是否成功執行
    """
    settings = load_settings()
    context = build_context(settings, notify=not dry_run)
    watcher = get_watcher_for_source(source, context)

    print(f"\n{'='*60}")
    print(f"Running source: {source}")
    print(f"Default interval: {settings.for_source(source).check_interval} minutes")
    if dry_run:
        print("Mode: DRY RUN (no notifications)")
    print(f"{'='*60}\n")

    try:
        if entity_id:
            outcome = await watcher.refresh(entity_id)
            if outcome is None:
                print(f"[{source}] {entity_id} not found")
                return False
            print(f"Events: {len(outcome.events)}")
            if outcome.error:
                print(f"Error: {outcome.error}")
            return outcome.error is None

        stats = await watcher.check_all()
        print(f"Checked: {stats['checked']}")
        print(f"Events: {stats['events']}")
        print(f"Errors: {stats['errors']}")
        return True
    finally:
        await close_browser()


def show_status(source: str) -> None:
    """顯示來源下每個項目的檢查狀態"""
    settings = load_settings()
    context = build_context(settings, notify=False)
    watcher = get_watcher_for_source(source, context)
    entities = watcher.list_entities()
    default_interval = settings.for_source(source).check_interval

    print(f"\n=== {source} Status ===")
    print(f"Items: {len(entities)}")
    for entity in entities:
        interval = entity.get("interval") or default_interval
        last_check = entity.get("lastCheck")
        state = "enabled" if entity.get("enabled", True) is not False else "disabled"
        print(f"\n- {entity['id']} ({state}, every {interval} min)")
        print(f"  Last check: {last_check or 'Never'}")
        next_run = get_next_run_time(last_check, interval)
        if next_run:
            print(f"  Next check: {next_run.strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"  Due: {'Yes' if is_due(last_check, interval) else 'No'}")
        if entity.get("lastError"):
            print(f"  Last error: {entity['lastError']}")


def main():
    """主程式"""
    parser = argparse.ArgumentParser(
        description="單一來源監控執行腳本",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
範例:
  %(prog)s rss                      # 檢查所有 RSS 訂閱
  %(prog)s price --id price_123     # 只檢查單一價格監控
  %(prog)s github --dry-run         # 測試模式（不發送通知）
  %(prog)s lottery --status         # 顯示檢查狀態
  %(prog)s --list                   # 列出所有可用來源
        """
    )

    parser.add_argument(
        "source",
        type=str,
        nargs="?",
        choices=list(VALID_SOURCES),
        help="要執行的來源名稱"
    )
    parser.add_argument(
        "--id",
        dest="entity_id",
        help="只檢查指定 ID 的項目"
    )
    parser.add_argument(
        "--dry-run", "-n",
        action="store_true",
        help="測試模式，不發送通知"
    )
    parser.add_argument(
        "--status", "-s",
        action="store_true",
        help="顯示來源的檢查狀態"
    )
    parser.add_argument(
        "--list", "-l",
        action="store_true",
        help="列出所有可用來源"
    )

    args = parser.parse_args()
    setup_logging()

    # 列出所有來源
    if args.list:
        print("Available sources:")
        for source in VALID_SOURCES:
            print(f"  - {source}")
        return 0

    # 檢查是否指定來源
    if not args.source:
        parser.print_help()
        return 1

    # 顯示狀態
    if args.status:
        show_status(args.source)
        return 0

    success = asyncio.run(run_source(args.source, entity_id=args.entity_id, dry_run=args.dry_run))
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
