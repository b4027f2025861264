# Watchers module - one monitor per source type
# Contains: base (shared lifecycle and check flow), rss, github, price, lottery

from .base import BaseWatcher, CheckOutcome, WatchContext
from .github import RepoWatcher
from .lottery import LotteryWatcher, SubscriberDirectory
from .price import PriceWatcher
from .rss import FeedWatcher

__all__ = [
    'BaseWatcher',
    'CheckOutcome',
    'WatchContext',
    'FeedWatcher',
    'RepoWatcher',
    'PriceWatcher',
    'LotteryWatcher',
    'SubscriberDirectory',
]
