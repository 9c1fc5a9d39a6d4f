from __future__ import annotations

import atexit
from typing import Optional, Tuple

from ..config import Settings, settings as default_settings
from ..errors import PersistenceError
from ..logging import logger
from .base import AccuracyProvider, ReviewStateStore, SettingsStore
from .memory import InMemoryAccuracyProvider, InMemoryReviewStore, InMemorySettingsStore
from .sqlite import SQLiteReviewStore, SQLiteSettingsStore
from .write_behind import WriteBehindReviewStore


def create_stores(app_settings: Optional[Settings] = None) -> Tuple[WriteBehindReviewStore, SQLiteSettingsStore]:
    """Build the SQLite-backed stores described by the application settings.

    レビュー状態は WRITE_BEHIND_DELAY_MS のデバウンス付きで、設定は同期的に
    REVIEW_DB_PATH の同一 DB へ保存される。デバウンス用タイマーはデーモン
    スレッドなので、未保存分はプロセス終了時に atexit で書き出す。
    """

    cfg = app_settings or default_settings
    review_store = WriteBehindReviewStore(
        SQLiteReviewStore(cfg.review_db_path),
        delay_ms=cfg.write_behind_delay_ms,
    )
    atexit.register(_flush_on_exit, review_store)
    return review_store, SQLiteSettingsStore(cfg.review_db_path)


def _flush_on_exit(review_store: WriteBehindReviewStore) -> None:
    try:
        review_store.close()
    except PersistenceError as exc:
        logger.error("write_behind_exit_flush_failed", pending=review_store.pending_count, error=str(exc))


__all__ = [
    "AccuracyProvider",
    "InMemoryAccuracyProvider",
    "InMemoryReviewStore",
    "InMemorySettingsStore",
    "ReviewStateStore",
    "SQLiteReviewStore",
    "SQLiteSettingsStore",
    "SettingsStore",
    "WriteBehindReviewStore",
    "create_stores",
]
