#!/usr/bin/env python3
"""
測試各監控器的檢查流程與項目生命週期
"""
import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, call, patch

from core.audit import AuditLog
from core.config import Settings
from core.errors import FetchErrorKind
from core.fetcher import FetchResult
from core.models import FeedItem, ParsedFeed
from core.notifier import NotificationDispatcher
from core.storage import MemoryStore
from watchers.base import WatchContext
from watchers.github import RepoWatcher, parse_repo
from watchers.lottery import LotteryWatcher, SubscriberDirectory, build_lucky_url, parse_post_id
from watchers.price import PriceWatcher, extract_price, parse_price
from watchers.rss import FeedWatcher


def _context(initial=None):
    store = MemoryStore(initial)
    audit = AuditLog(store)
    settings = Settings()
    for watch_settings in settings.watchers.values():
        watch_settings.sweep_delay = 0
    pipeline = MagicMock()
    pipeline.fetch_feed = AsyncMock()
    pipeline.fetch_text = AsyncMock()
    pipeline.fetch_json = AsyncMock()
    return WatchContext(
        store=store,
        dispatcher=NotificationDispatcher(audit),
        scheduler=MagicMock(),
        pipeline=pipeline,
        audit=audit,
        settings=settings,
    )


def _feed(*ids, title="Blog"):
    return FetchResult.ok(ParsedFeed(title=title, items=[FeedItem(id=i, title=f"post {i}", link=f"https://x/{i}") for i in ids]))


class TestFeedWatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.context = _context({"subscriptions": [
            {"id": "sub_1", "url": "https://example.com/feed", "title": "Unknown", "isFirstCheck": True},
        ]})
        self.store = self.context.store
        self.handler = AsyncMock()
        self.context.dispatcher.subscribe(self.handler)
        self.watcher = FeedWatcher(self.context)

    async def test_cold_start_then_new_item(self):
        self.context.pipeline.fetch_feed.return_value = _feed("a", "b")
        outcome = await self.watcher.check_by_id("sub_1")

        self.assertEqual(outcome.events, [])
        self.handler.assert_not_awaited()
        saved = self.store.find_entity("subscriptions", "sub_1")
        self.assertFalse(saved["isFirstCheck"])
        self.assertEqual(saved["title"], "Blog")
        self.assertIsNotNone(saved["lastCheck"])
        self.assertIsNone(saved["lastError"])
        self.assertEqual(self.store.get_keyed("seen_items", "sub_1"), ["a", "b"])

        self.context.pipeline.fetch_feed.return_value = _feed("c", "a", "b")
        outcome = await self.watcher.check_by_id("sub_1")

        self.assertEqual(len(outcome.events), 1)
        event = self.handler.await_args[0][0]
        self.assertEqual(event.type, "feed_item")
        self.assertEqual(event.payload["title"], "post c")
        self.assertEqual(event.payload["feed_title"], "Blog")
        history = self.store.load("new_items_history")
        self.assertEqual([h["id"] for h in history], ["c"])
        self.assertEqual(history[0]["feedId"], "sub_1")

    async def test_same_content_twice_notifies_once(self):
        self.store.update_entity("subscriptions", "sub_1", {"isFirstCheck": False})
        self.context.pipeline.fetch_feed.return_value = _feed("a")
        await self.watcher.check_by_id("sub_1")
        await self.watcher.check_by_id("sub_1")
        self.assertEqual(self.handler.await_count, 1)

    async def test_keyword_filter_applied(self):
        self.store.update_entity("subscriptions", "sub_1", {
            "isFirstCheck": False, "keywords": {"whitelist": ["post b"], "blacklist": []},
        })
        self.context.pipeline.fetch_feed.return_value = _feed("a", "b")
        outcome = await self.watcher.check_by_id("sub_1")
        self.assertEqual([e.payload["title"] for e in outcome.events], ["post b"])

    async def test_fetch_failure_recorded(self):
        self.context.pipeline.fetch_feed.return_value = FetchResult.fail(FetchErrorKind.TRANSPORT, "HTTP 502")
        outcome = await self.watcher.check_by_id("sub_1")

        self.assertEqual(outcome.error, "HTTP 502")
        saved = self.store.find_entity("subscriptions", "sub_1")
        self.assertEqual(saved["lastError"], "HTTP 502")
        self.assertTrue(saved["isFirstCheck"])
        logs = self.store.load("logs")
        self.assertEqual(logs[-1]["level"], "error")
        self.assertEqual(logs[-1]["source"], "rss")

    async def test_unexpected_exception_is_contained(self):
        self.context.pipeline.fetch_feed.side_effect = RuntimeError("boom")
        outcome = await self.watcher.check_by_id("sub_1")
        self.assertEqual(outcome.error, "boom")
        self.assertEqual(self.store.find_entity("subscriptions", "sub_1")["lastError"], "boom")

    async def test_entity_deleted_during_check_discards_result(self):
        self.store.update_entity("subscriptions", "sub_1", {"isFirstCheck": False})

        async def fetch_and_delete(url):
            self.store.delete_entity("subscriptions", "sub_1")
            return _feed("a")

        self.context.pipeline.fetch_feed.side_effect = fetch_and_delete
        outcome = await self.watcher.check_by_id("sub_1")

        self.assertIsNone(outcome)
        self.assertEqual(self.store.get_entities("subscriptions"), [])
        self.assertIsNone(self.store.get_keyed("seen_items", "sub_1"))
        self.handler.assert_not_awaited()

    async def test_dispatch_failure_does_not_touch_state(self):
        self.store.update_entity("subscriptions", "sub_1", {"isFirstCheck": False})
        self.handler.side_effect = RuntimeError("telegram down")
        self.context.pipeline.fetch_feed.return_value = _feed("a")

        outcome = await self.watcher.check_by_id("sub_1")

        self.assertEqual(len(outcome.events), 1)
        self.assertEqual(self.store.get_keyed("seen_items", "sub_1"), ["a"])
        self.assertIsNone(self.store.find_entity("subscriptions", "sub_1")["lastError"])

    async def test_overlapping_check_is_skipped(self):
        release = asyncio.Event()

        async def slow_fetch(url):
            await release.wait()
            return _feed("a")

        self.context.pipeline.fetch_feed.side_effect = slow_fetch
        first = asyncio.create_task(self.watcher.check_by_id("sub_1"))
        await asyncio.sleep(0)

        self.assertIsNone(await self.watcher.refresh("sub_1"))
        release.set()
        self.assertIsNotNone(await first)
        self.assertEqual(self.context.pipeline.fetch_feed.await_count, 1)

    async def test_disabled_entity_skipped_unless_forced(self):
        self.store.update_entity("subscriptions", "sub_1", {"enabled": False})
        self.context.pipeline.fetch_feed.return_value = _feed("a")
        self.assertIsNone(await self.watcher.check_by_id("sub_1"))
        self.assertIsNotNone(await self.watcher.refresh("sub_1"))

    async def test_missing_entity_cancels_timer(self):
        self.assertIsNone(await self.watcher.check_by_id("sub_gone"))
        self.context.scheduler.cancel.assert_called_with("rss:sub_gone")

    async def test_check_all_continues_after_failure(self):
        self.store.add_entity("subscriptions", {"id": "sub_2", "url": "https://other/feed", "isFirstCheck": False})

        async def fetch(url):
            if url == "https://example.com/feed":
                raise RuntimeError("boom")
            return _feed("x")

        self.context.pipeline.fetch_feed.side_effect = fetch
        stats = await self.watcher.check_all()

        self.assertEqual(stats, {"checked": 2, "errors": 1, "events": 1})

    async def test_check_all_waits_between_items(self):
        """逐一檢查，每兩個項目之間等待 sweep_delay 秒"""
        for i in (2, 3):
            self.store.add_entity("subscriptions", {"id": f"sub_{i}", "url": f"https://other/{i}", "isFirstCheck": False})
        self.context.settings.for_source("rss").sweep_delay = 2
        order = []

        async def fetch(url):
            order.append(url)
            return _feed("x")

        async def pause(seconds):
            order.append(("sleep", seconds))

        self.context.pipeline.fetch_feed.side_effect = fetch
        with patch("watchers.base.asyncio.sleep", new=AsyncMock(side_effect=pause)) as mock_sleep:
            stats = await self.watcher.check_all()

        self.assertEqual(stats["checked"], 3)
        self.assertEqual(mock_sleep.await_args_list, [call(2), call(2)])
        self.assertEqual(order, [
            "https://example.com/feed", ("sleep", 2),
            "https://other/2", ("sleep", 2),
            "https://other/3",
        ])


class TestWatcherLifecycle(unittest.TestCase):
    def setUp(self):
        self.context = _context()
        self.watcher = FeedWatcher(self.context)

    def test_add_applies_defaults_and_schedules(self):
        entity = self.watcher.add({"url": "https://example.com/feed"})

        self.assertTrue(entity["id"].startswith("sub_"))
        self.assertEqual(entity["interval"], 30)
        self.assertTrue(entity["isFirstCheck"])
        self.assertEqual(entity["keywords"], {"whitelist": [], "blacklist": []})
        key, _, interval = self.context.scheduler.schedule.call_args[0]
        self.assertEqual(key, f"rss:{entity['id']}")
        self.assertEqual(interval, 30 * 60)

    def test_add_requires_url(self):
        with self.assertRaises(ValueError):
            self.watcher.add({"title": "no url"})

    def test_add_disabled_does_not_schedule(self):
        self.watcher.add({"url": "https://example.com/feed", "enabled": False})
        self.context.scheduler.schedule.assert_not_called()

    def test_update_reschedules(self):
        entity = self.watcher.add({"id": "sub_1", "url": "https://example.com/feed"})
        updated = self.watcher.update(entity["id"], {"interval": 5, "id": "hijack"})

        self.assertEqual(updated["id"], "sub_1")
        self.context.scheduler.cancel.assert_called_with("rss:sub_1")
        self.assertEqual(self.context.scheduler.schedule.call_args[0][2], 5 * 60)
        self.assertIsNone(self.watcher.update("missing", {"interval": 1}))

    def test_delete_clears_transient_state(self):
        self.watcher.add({"id": "sub_1", "url": "https://example.com/feed"})
        self.context.store.set_keyed("seen_items", "sub_1", ["a"])
        self.context.store.save("new_items_history", [{"id": "a", "feedId": "sub_1"}, {"id": "b", "feedId": "sub_2"}])

        self.assertTrue(self.watcher.delete("sub_1", purge_history=True))

        self.context.scheduler.cancel.assert_called_with("rss:sub_1")
        self.assertIsNone(self.context.store.get_keyed("seen_items", "sub_1"))
        self.assertEqual(self.context.store.load("new_items_history"), [{"id": "b", "feedId": "sub_2"}])

    def test_start_all_skips_disabled(self):
        self.context.store.save("subscriptions", [
            {"id": "sub_1", "url": "a"},
            {"id": "sub_2", "url": "b", "enabled": False},
        ])
        self.assertEqual(self.watcher.start_all(), 1)

    def test_github_startup_delay(self):
        watcher = RepoWatcher(self.context)
        watcher.add({"fullName": "octo/cat", "watchTypes": ["release", "star"]})
        self.assertEqual(self.context.scheduler.schedule.call_args[1]["initial_delay"], 30)

    def test_start_all_staggers_first_checks(self):
        """同類項目的首次檢查依序錯開 sweep_delay 秒"""
        self.context.settings.for_source("github").sweep_delay = 2
        self.context.store.save("github_repos", [
            {"id": f"gh_{i}", "owner": "octo", "repo": f"r{i}", "fullName": f"octo/r{i}", "watchTypes": ["star"]}
            for i in range(4)
        ] + [{"id": "gh_off", "fullName": "octo/off", "enabled": False}])

        self.assertEqual(RepoWatcher(self.context).start_all(), 4)

        delays = [c[1]["initial_delay"] for c in self.context.scheduler.schedule.call_args_list]
        self.assertEqual(delays, [30, 32, 34, 36])
        intervals = {c[0][2] for c in self.context.scheduler.schedule.call_args_list}
        self.assertEqual(len(intervals), 1)


class TestRepoWatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.context = _context({"github_repos": [{
            "id": "gh_1", "owner": "octo", "repo": "cat", "fullName": "octo/cat",
            "watchTypes": ["release", "star"],
            "lastRelease": {"tag": "v1.0"}, "lastStar": 80,
        }]})
        self.context.settings.github_token = "secret"
        self.watcher = RepoWatcher(self.context)

    def _json(self, release, repo):
        async def fetch_json(url, headers=None):
            self.assertEqual(headers["Authorization"], "token secret")
            return release if url.endswith("/releases/latest") else repo
        self.context.pipeline.fetch_json.side_effect = fetch_json

    async def test_new_release_and_single_milestone(self):
        self._json(
            FetchResult.ok({"tag_name": "v1.1", "name": "v1.1", "html_url": "https://github.com/octo/cat/releases/v1.1"}),
            FetchResult.ok({"stargazers_count": 1200}),
        )
        outcome = await self.watcher.check_by_id("gh_1")

        self.assertEqual([e.type for e in outcome.events], ["release", "star_milestone"])
        self.assertEqual(outcome.events[1].payload["milestone"], 100)
        saved = self.context.store.find_entity("github_repos", "gh_1")
        self.assertEqual(saved["lastRelease"]["tag"], "v1.1")
        self.assertEqual(saved["lastStar"], 1200)
        self.assertEqual(len(self.context.store.load("github_notifications")), 2)

    async def test_release_not_found_is_not_an_error(self):
        self._json(
            FetchResult.fail(FetchErrorKind.NOT_FOUND, "HTTP 404 Not Found"),
            FetchResult.ok({"stargazers_count": 90}),
        )
        outcome = await self.watcher.check_by_id("gh_1")
        self.assertIsNone(outcome.error)
        self.assertEqual(outcome.events, [])

    async def test_partial_failure_keeps_successful_part(self):
        self._json(
            FetchResult.ok({"tag_name": "v2.0"}),
            FetchResult.fail(FetchErrorKind.TRANSPORT, "HTTP 502"),
        )
        outcome = await self.watcher.check_by_id("gh_1")
        self.assertEqual([e.type for e in outcome.events], ["release"])
        self.assertIn("HTTP 502", outcome.error)
        saved = self.context.store.find_entity("github_repos", "gh_1")
        self.assertEqual(saved["lastStar"], 80)
        self.assertIn("HTTP 502", saved["lastError"])


class TestPriceWatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.context = _context({"price_monitors": [{
            "id": "price_1", "name": "SSD", "url": "https://shop/1", "selector": ".price",
            "targetPrice": 50, "notifyOnAnyChange": False, "notifyOnDrop": False,
            "currentPrice": 60, "lastPrice": 65,
        }]})
        self.watcher = PriceWatcher(self.context)

    async def test_target_reached(self):
        self.context.pipeline.fetch_text.return_value = FetchResult.ok('<span class="price">¥45.00</span>')
        outcome = await self.watcher.check_by_id("price_1")

        self.assertEqual(outcome.events[0].payload["reason"], "target")
        saved = self.context.store.find_entity("price_monitors", "price_1")
        self.assertEqual((saved["currentPrice"], saved["lastPrice"]), (45.0, 60))
        self.assertEqual([h["price"] for h in self.watcher.get_history("price_1")], [45.0])

    async def test_extraction_failure_keeps_prices(self):
        self.context.pipeline.fetch_text.return_value = FetchResult.ok("<div>sold out</div>")
        outcome = await self.watcher.check_by_id("price_1")

        self.assertEqual(outcome.error, "无法提取价格")
        saved = self.context.store.find_entity("price_monitors", "price_1")
        self.assertEqual((saved["currentPrice"], saved["lastPrice"]), (60, 65))
        self.assertEqual(saved["lastError"], "无法提取价格")
        self.assertEqual(self.watcher.get_history("price_1"), [])


class TestPriceParsing(unittest.TestCase):
    def test_parse_price(self):
        self.assertEqual(parse_price("¥1,299.00"), 1299.0)
        self.assertEqual(parse_price("US $ 19.99"), 19.99)
        self.assertEqual(parse_price("￥ 88"), 88.0)
        self.assertIsNone(parse_price("暂无报价"))
        self.assertIsNone(parse_price(""))

    def test_extract_price_from_attribute(self):
        page = '<meta itemprop="price" content="249.50"><span data-price="10" class="p"></span>'
        self.assertEqual(extract_price(page, 'meta[itemprop="price"]'), 249.5)
        self.assertEqual(extract_price(page, ".p"), 10.0)
        self.assertIsNone(extract_price(page, ".missing"))


class TestLotteryWatcher(unittest.IsolatedAsyncioTestCase):
    PAGE = """
    <table><tbody>
      <tr><td>Alice</td><td>鸡腿</td></tr>
      <tr><td>stranger</td><td>鸡腿</td></tr>
    </tbody></table>
    """

    def setUp(self):
        self.context = _context({
            "lottery_watches": [{"id": "lottery_1", "postId": "12345", "title": "抽鸡腿"}],
            "user_bindings": {"1001": "alice"},
        })
        self.handler = AsyncMock()
        self.context.dispatcher.subscribe(self.handler)
        self.watcher = LotteryWatcher(self.context)
        self.context.pipeline.fetch_text.return_value = FetchResult.ok(self.PAGE)

    async def test_notifies_bound_winner_once(self):
        first = await self.watcher.check_by_id("lottery_1")
        second = await self.watcher.check_by_id("lottery_1")

        self.assertEqual(len(first.events), 1)
        self.assertEqual(second.events, [])
        event = self.handler.await_args[0][0]
        self.assertEqual(event.payload["telegram_id"], "1001")
        self.assertEqual(event.payload["username"], "Alice")
        self.assertEqual(self.context.store.get_keyed("lottery_winners", "lottery_1"), ["Alice"])
        args, kwargs = self.context.pipeline.fetch_text.await_args
        self.assertEqual(args, ("https://www.nodeseek.com/lucky?post=12345",))
        self.assertFalse(kwargs["use_browser"])
        self.assertEqual(kwargs["headers"]["Referer"], "https://www.nodeseek.com/")

    async def test_delete_forgets_notified_winners(self):
        await self.watcher.check_by_id("lottery_1")
        self.watcher.delete("lottery_1")
        self.assertIsNone(self.context.store.get_keyed("lottery_winners", "lottery_1"))


class TestLotteryHelpers(unittest.TestCase):
    def test_build_lucky_url(self):
        self.assertEqual(build_lucky_url("1", "https://www.nodeseek.com/lucky?post=1&x=2"),
                         "https://www.nodeseek.com/lucky?post=1&x=2")
        self.assertEqual(build_lucky_url("1", "https://www.nodeseek.com/post-1-1"),
                         "https://www.nodeseek.com/lucky?post=1")

    def test_parse_post_id(self):
        self.assertEqual(parse_post_id("https://www.nodeseek.com/post-98765-1"), "98765")
        self.assertEqual(parse_post_id("https://www.nodeseek.com/lucky?post=42"), "42")
        self.assertEqual(parse_post_id("777"), "777")
        self.assertIsNone(parse_post_id("hello"))

    def test_find_subscriber_case_insensitive(self):
        directory = SubscriberDirectory(MemoryStore())
        directory.bind("1001", "Alice")
        self.assertEqual(directory.find_subscriber_by_external_username("ALICE"), "1001")
        self.assertIsNone(directory.find_subscriber_by_external_username("bob"))

    def test_parse_repo(self):
        self.assertEqual(parse_repo("octo/cat"), ("octo", "cat"))
        self.assertEqual(parse_repo("https://github.com/octo/cat.git"), ("octo", "cat"))
        with self.assertRaises(ValueError):
            parse_repo("not a repo")


if __name__ == "__main__":
    unittest.main()
