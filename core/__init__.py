# Core module - shared components for all watchers
# Contains: errors, models, storage, audit, config, fetcher, browser, detectors, winners, notifier, scheduler

from .audit import AuditLog
from .config import Settings, load_settings, get_watcher_for_source, VALID_SOURCES
from .errors import (
    FetchErrorKind,
    FetchError,
    TransportError,
    ForbiddenError,
    NotFoundError,
    ParseError,
    DispatchError,
)
from .fetcher import FetchPipeline, FetchResult, HttpClient
from .notifier import NotificationDispatcher, TelegramNotifier
from .scheduler import WatchScheduler, is_due, get_next_run_time, get_time_until_next_run
from .storage import KeyValueStore, JsonFileStore, MemoryStore

__all__ = [
    'AuditLog',
    'Settings',
    'load_settings',
    'get_watcher_for_source',
    'VALID_SOURCES',
    'FetchErrorKind',
    'FetchError',
    'TransportError',
    'ForbiddenError',
    'NotFoundError',
    'ParseError',
    'DispatchError',
    'FetchPipeline',
    'FetchResult',
    'HttpClient',
    'NotificationDispatcher',
    'TelegramNotifier',
    'WatchScheduler',
    'is_due',
    'get_next_run_time',
    'get_time_until_next_run',
    'KeyValueStore',
    'JsonFileStore',
    'MemoryStore',
]
