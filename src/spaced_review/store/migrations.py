"""Versioned schema migrations for the SQLite review database.

適用済みバージョンは ``schema_migrations`` に記録し、未適用のものだけを
番号順に 1 件ずつトランザクション内で実行する。何度呼んでも結果は同じ。
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from ..clock import utc_now
from ..logging import logger


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[sqlite3.Connection], None]


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table});").fetchall()}


def _add_column(conn: sqlite3.Connection, table: str, column: str, ddl: str) -> None:
    if column not in _columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl};")


def _create_review_states(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS review_states (
            topic_id TEXT PRIMARY KEY,
            cycle_index INTEGER NOT NULL DEFAULT 0,
            is_blocked INTEGER NOT NULL DEFAULT 0,
            next_review_date TEXT NOT NULL,
            last_review_date TEXT,
            total_reviews INTEGER NOT NULL DEFAULT 0,
            exam_date TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_review_states_due ON review_states(is_blocked, next_review_date);"
    )


def _add_intelligent_columns(conn: sqlite3.Connection) -> None:
    # 既存行は既定値（ease 2.5 など）で埋まる
    _add_column(conn, "review_states", "ease_factor", "REAL NOT NULL DEFAULT 2.5")
    _add_column(conn, "review_states", "average_quality", "REAL NOT NULL DEFAULT 0")
    _add_column(conn, "review_states", "streak_count", "INTEGER NOT NULL DEFAULT 0")
    _add_column(conn, "review_states", "failure_count", "INTEGER NOT NULL DEFAULT 0")
    _add_column(conn, "review_states", "personalized_multiplier", "REAL NOT NULL DEFAULT 1.0")


def _create_review_history(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS review_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            topic_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            reviewed_at TEXT NOT NULL,
            quality REAL NOT NULL,
            response_time REAL NOT NULL,
            was_correct INTEGER NOT NULL,
            confidence_level TEXT NOT NULL,
            FOREIGN KEY(topic_id) REFERENCES review_states(topic_id) ON DELETE CASCADE
        );
        """
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_review_history_topic_pos ON review_history(topic_id, position);"
    )


def _create_app_settings(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            setting_key TEXT PRIMARY KEY,
            category TEXT NOT NULL,
            setting_value TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )


def _add_interval_days(conn: sqlite3.Connection) -> None:
    _add_column(conn, "review_states", "interval_days", "REAL NOT NULL DEFAULT 0")


MIGRATIONS: List[Migration] = [
    Migration(1, "create_review_states", _create_review_states),
    Migration(2, "add_intelligent_review_columns", _add_intelligent_columns),
    Migration(3, "create_review_history", _create_review_history),
    Migration(4, "create_app_settings", _create_app_settings),
    Migration(5, "add_interval_days", _add_interval_days),
]


def applied_versions(conn: sqlite3.Connection) -> set[int]:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        );
        """
    )
    return {int(row[0]) for row in conn.execute("SELECT version FROM schema_migrations;").fetchall()}


def apply_migrations(
    conn: sqlite3.Connection,
    migrations: List[Migration] | None = None,
    now: Callable[[], datetime] = utc_now,
) -> List[int]:
    """Run pending migrations in version order; returns the versions applied.

    ``conn`` must be in autocommit mode (``isolation_level=None``).
    """

    pending = sorted(migrations if migrations is not None else MIGRATIONS, key=lambda m: m.version)
    done = applied_versions(conn)
    applied: List[int] = []
    for migration in pending:
        if migration.version in done:
            continue
        conn.execute("BEGIN IMMEDIATE;")
        try:
            # 並行プロセスが先に適用した場合はスキップ
            row = conn.execute(
                "SELECT 1 FROM schema_migrations WHERE version = ?;", (migration.version,)
            ).fetchone()
            if row is None:
                migration.apply(conn)
                conn.execute(
                    "INSERT INTO schema_migrations(version, name, applied_at) VALUES (?, ?, ?);",
                    (migration.version, migration.name, now().isoformat()),
                )
                applied.append(migration.version)
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        if applied and applied[-1] == migration.version:
            logger.info("migration_applied", version=migration.version, name=migration.name)
    return applied
