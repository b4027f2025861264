#!/usr/bin/env python3
"""
測試變化偵測（feed 新項目、版本、star 里程碑、價格、中獎者）
"""
import unittest

from hypothesis import given, settings, strategies as st

from core.detectors import (
    SEEN_ITEMS_LIMIT,
    STAR_MILESTONES,
    detect_feed_items,
    detect_new_winners,
    detect_release,
    detect_star_milestone,
    evaluate_price,
)
from core.models import FeedItem, PriceWatch, Winner


def _items(*ids):
    return [FeedItem(id=i, title=f"title {i}") for i in ids]


class TestDetectFeedItems(unittest.TestCase):
    def test_first_check_records_baseline_only(self):
        new_items, seen = detect_feed_items([], _items("a", "b"), is_first_check=True)
        self.assertEqual(new_items, [])
        self.assertEqual(seen, ["a", "b"])

    def test_new_items_detected_in_feed_order(self):
        new_items, seen = detect_feed_items(["a"], _items("c", "a", "b"))
        self.assertEqual([i.id for i in new_items], ["c", "b"])
        self.assertEqual(seen, ["a", "c", "b"])

    def test_same_feed_twice_is_idempotent(self):
        items = _items("a", "b", "c")
        first, seen = detect_feed_items([], items)
        second, seen_again = detect_feed_items(seen, items)
        self.assertEqual(len(first), 3)
        self.assertEqual(second, [])
        self.assertEqual(seen, seen_again)

    def test_duplicate_ids_within_one_fetch(self):
        new_items, seen = detect_feed_items([], _items("a", "a"))
        self.assertEqual(len(new_items), 1)
        self.assertEqual(seen, ["a"])

    def test_seen_set_is_capped_to_newest(self):
        """600 個不同 ID 只保留最後 500 個"""
        ids = [f"id-{n}" for n in range(600)]
        _, seen = detect_feed_items([], _items(*ids))
        self.assertEqual(len(seen), SEEN_ITEMS_LIMIT)
        self.assertEqual(seen, ids[100:])


class TestDetectRelease(unittest.TestCase):
    def test_first_release_is_baseline(self):
        transition, tag = detect_release(None, {"tag_name": "v1.0"})
        self.assertIsNone(transition)
        self.assertEqual(tag, "v1.0")

    def test_new_tag_fires(self):
        release = {"tag_name": "v1.1", "name": "1.1"}
        transition, tag = detect_release("v1.0", release)
        self.assertEqual(transition, release)
        self.assertEqual(tag, "v1.1")

    def test_same_tag_does_not_fire(self):
        self.assertEqual(detect_release("v1.0", {"tag_name": "v1.0"}), (None, "v1.0"))

    def test_no_release_keeps_last_tag(self):
        self.assertEqual(detect_release("v1.0", None), (None, "v1.0"))


class TestDetectStarMilestone(unittest.TestCase):
    def test_large_jump_fires_smallest_milestone_once(self):
        self.assertEqual(detect_star_milestone(80, 1200), (100, 1200))

    def test_first_observation_is_baseline(self):
        self.assertEqual(detect_star_milestone(None, 5000), (None, 5000))

    def test_landing_exactly_on_milestone(self):
        self.assertEqual(detect_star_milestone(499, 500), (500, 500))

    def test_no_repeat_after_crossing(self):
        milestone, count = detect_star_milestone(99, 150)
        self.assertEqual(milestone, 100)
        self.assertEqual(detect_star_milestone(count, 180), (None, 180))

    def test_decrease_updates_count_without_event(self):
        self.assertEqual(detect_star_milestone(600, 450), (None, 450))


@settings(max_examples=200)
@given(
    last=st.integers(min_value=0, max_value=200000),
    current=st.integers(min_value=0, max_value=200000),
)
def test_star_milestone_is_smallest_crossed(last, current):
    """任何 (last, current)，至多返回一個里程碑，且為跨過的最小者"""
    milestone, count = detect_star_milestone(last, current)
    crossed = [m for m in STAR_MILESTONES if last < m <= current]
    assert count == current
    if crossed:
        assert milestone == crossed[0]
    else:
        assert milestone is None


class TestEvaluatePrice(unittest.TestCase):
    def _watch(self, **kwargs):
        defaults = dict(id="price_1", url="https://example.com", selector=".price",
                        notify_on_any_change=False, notify_on_drop=False)
        defaults.update(kwargs)
        return PriceWatch(**defaults)

    def test_target_reached_overrides_other_flags(self):
        watch = self._watch(target_price=50, current_price=None)
        transition, updates = evaluate_price(watch, 45)
        self.assertEqual(transition["reason"], "target")
        self.assertEqual(updates, {"lastPrice": None, "currentPrice": 45})

    def test_target_fires_once_per_crossing(self):
        watch = self._watch(target_price=50, current_price=45)
        transition, _ = evaluate_price(watch, 40)
        self.assertIsNone(transition)

    def test_target_fires_again_after_going_back_above(self):
        watch = self._watch(target_price=50, current_price=60)
        transition, _ = evaluate_price(watch, 50)
        self.assertEqual(transition["reason"], "target")

    def test_drop_threshold(self):
        watch = self._watch(notify_on_drop=True, drop_threshold=10, current_price=100)
        self.assertIsNone(evaluate_price(watch, 95)[0])
        transition, _ = evaluate_price(watch, 90)
        self.assertEqual(transition["reason"], "drop")
        self.assertAlmostEqual(transition["drop_percent"], 10.0)

    def test_drop_needs_known_last_price(self):
        watch = self._watch(notify_on_drop=True, drop_threshold=0, current_price=None)
        self.assertIsNone(evaluate_price(watch, 10)[0])

    def test_any_change(self):
        watch = self._watch(notify_on_any_change=True, current_price=100)
        transition, _ = evaluate_price(watch, 120)
        self.assertEqual(transition["reason"], "change")
        self.assertAlmostEqual(transition["change_percent"], 20.0)
        self.assertIsNone(evaluate_price(watch, 100)[0])

    def test_previous_current_price_becomes_last_price(self):
        watch = self._watch(current_price=100, last_price=110)
        _, updates = evaluate_price(watch, 90)
        self.assertEqual(updates, {"lastPrice": 100, "currentPrice": 90})


class TestDetectNewWinners(unittest.TestCase):
    def setUp(self):
        self.bindings = {"alice": "1001", "bob": "1002"}
        self.resolve = self.bindings.get

    def test_duplicate_suppression(self):
        winners = [Winner("alice"), Winner("bob")]
        first, notified = detect_new_winners([], winners, self.resolve)
        second, notified_again = detect_new_winners(notified, winners, self.resolve)
        self.assertEqual([(w.username, tid) for w, tid in first], [("alice", "1001"), ("bob", "1002")])
        self.assertEqual(second, [])
        self.assertEqual(notified_again, ["alice", "bob"])

    def test_unresolvable_winner_skipped(self):
        matches, notified = detect_new_winners([], [Winner("carol"), Winner("alice")], self.resolve)
        self.assertEqual([w.username for w, _ in matches], ["alice"])
        self.assertEqual(notified, ["alice"])


if __name__ == "__main__":
    unittest.main()
