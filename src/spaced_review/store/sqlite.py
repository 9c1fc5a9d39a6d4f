from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from ..clock import ensure_utc, utc_now
from ..errors import PersistenceError
from ..logging import logger
from ..models.review import ReviewHistoryEntry, ReviewState
from ..models.settings import ReviewSettings
from .base import apply_settings_changes, default_settings_after
from .migrations import apply_migrations


SETTINGS_KEY = "review_settings"
SETTINGS_CATEGORY = "review"

_STATE_COLUMNS = (
    "topic_id",
    "cycle_index",
    "ease_factor",
    "average_quality",
    "streak_count",
    "failure_count",
    "personalized_multiplier",
    "is_blocked",
    "next_review_date",
    "last_review_date",
    "interval_days",
    "total_reviews",
    "exam_date",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    # fixed-width UTC text keeps lexical order equal to time order
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class _SQLiteDatabase:
    """Connection handling shared by the SQLite stores.

    - 接続毎に WAL と外部キーを有効化する（autocommit 接続）
    - 初回生成時にスキーマのマイグレーションを適用する
    - 書き込みは ``BEGIN IMMEDIATE`` で直列化する
    """

    def __init__(self, db_path: str, now: Callable[[], datetime] = utc_now) -> None:
        self.db_path = db_path
        self._now = now
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
            conn.execute("pragma foreign_keys=ON;")
        return conn

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            apply_migrations(conn, now=self._now)
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK;")
        except sqlite3.Error:
            pass


class SQLiteReviewStore(_SQLiteDatabase):
    """SQLite-backed review state store.

    Tables:
    - review_states: 1 トピック 1 行のスケジュール状態
    - review_history: 採点付き復習の追記専用ログ（position で順序付け）

    Notes:
    - put は状態行の upsert と未保存の履歴行の追加を 1 トランザクションで行う
    - 書き込み失敗は PersistenceError に包んで送出し、保存済みの行は変わらない
    """

    # --- public API ---
    def get(self, topic_id: str) -> ReviewState | None:
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {', '.join(_STATE_COLUMNS)} FROM review_states WHERE topic_id = ?;",
                (topic_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_state(row, self._history(conn, [topic_id]).get(topic_id, []))
        finally:
            conn.close()

    def put(self, state: ReviewState) -> None:
        now = _iso(self._now())
        values = self._to_row(state)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            assignments = ", ".join(f"{c} = excluded.{c}" for c in _STATE_COLUMNS if c != "topic_id")
            conn.execute(
                f"""
                INSERT INTO review_states({', '.join(_STATE_COLUMNS)}, created_at, updated_at)
                VALUES ({', '.join('?' for _ in _STATE_COLUMNS)}, ?, ?)
                ON CONFLICT(topic_id) DO UPDATE SET {assignments}, updated_at = excluded.updated_at;
                """,
                (*values, now, now),
            )
            # 履歴は追記のみ: 保存済みの件数より後ろだけを挿入する
            stored = conn.execute(
                "SELECT COUNT(*) FROM review_history WHERE topic_id = ?;", (state.topic_id,)
            ).fetchone()[0]
            for position, entry in enumerate(state.history[stored:], start=stored):
                conn.execute(
                    """
                    INSERT INTO review_history(
                        topic_id, position, reviewed_at, quality, response_time, was_correct, confidence_level
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        state.topic_id,
                        position,
                        _iso(entry.date),
                        entry.quality,
                        entry.response_time,
                        1 if entry.was_correct else 0,
                        entry.confidence_level.value,
                    ),
                )
            conn.execute("COMMIT;")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise PersistenceError(f"failed to save review state for {state.topic_id!r}: {exc}") from exc
        finally:
            conn.close()

    def list_due(self, now: datetime) -> list[ReviewState]:
        return self._select("WHERE is_blocked = 1 AND next_review_date <= ?", (_iso(now),))

    def list_all(self) -> list[ReviewState]:
        return self._select("", ())

    # --- helpers ---
    def _select(self, where: str, params: tuple) -> List[ReviewState]:
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {', '.join(_STATE_COLUMNS)} FROM review_states {where} ORDER BY next_review_date, topic_id;",
                params,
            ).fetchall()
            history = self._history(conn, [row["topic_id"] for row in rows])
            return [self._to_state(row, history.get(row["topic_id"], [])) for row in rows]
        finally:
            conn.close()

    @staticmethod
    def _history(conn: sqlite3.Connection, topic_ids: List[str]) -> dict[str, List[ReviewHistoryEntry]]:
        if not topic_ids:
            return {}
        placeholders = ", ".join("?" for _ in topic_ids)
        rows = conn.execute(
            f"""
            SELECT topic_id, reviewed_at, quality, response_time, was_correct, confidence_level
            FROM review_history
            WHERE topic_id IN ({placeholders})
            ORDER BY topic_id, position;
            """,
            topic_ids,
        ).fetchall()
        grouped: dict[str, List[ReviewHistoryEntry]] = {}
        for r in rows:
            grouped.setdefault(r["topic_id"], []).append(
                ReviewHistoryEntry(
                    date=_parse(r["reviewed_at"]),
                    quality=float(r["quality"]),
                    response_time=float(r["response_time"]),
                    was_correct=bool(r["was_correct"]),
                    confidence_level=r["confidence_level"],
                )
            )
        return grouped

    @staticmethod
    def _to_row(state: ReviewState) -> tuple:
        return (
            state.topic_id,
            state.cycle_index,
            state.ease_factor,
            state.average_quality,
            state.streak_count,
            state.failure_count,
            state.personalized_multiplier,
            1 if state.is_blocked else 0,
            _iso(state.next_review_date),
            _iso(state.last_review_date),
            state.interval_days,
            state.total_reviews,
            _iso(state.exam_date),
        )

    @staticmethod
    def _to_state(row: sqlite3.Row, history: List[ReviewHistoryEntry]) -> ReviewState:
        return ReviewState(
            topic_id=row["topic_id"],
            cycle_index=int(row["cycle_index"]),
            ease_factor=float(row["ease_factor"]),
            average_quality=float(row["average_quality"]),
            streak_count=int(row["streak_count"]),
            failure_count=int(row["failure_count"]),
            personalized_multiplier=float(row["personalized_multiplier"]),
            is_blocked=bool(row["is_blocked"]),
            next_review_date=_parse(row["next_review_date"]),
            last_review_date=_parse(row["last_review_date"]),
            interval_days=float(row["interval_days"]),
            total_reviews=int(row["total_reviews"]),
            exam_date=_parse(row["exam_date"]),
            history=history,
        )


class SQLiteSettingsStore(_SQLiteDatabase):
    """Single-record ReviewSettings persisted as JSON in ``app_settings``.

    読み出し時に行が無い・JSON が壊れている・検証に通らない場合は、
    呼び出し側を失敗させずに既定値で作り直して保存する。
    update / reset は読み出し〜書き込みを 1 つの ``BEGIN IMMEDIATE`` で行うため、
    別接続からの同時更新で変更や version が失われない。
    """

    def get(self) -> ReviewSettings:
        try:
            row = self._read()
        except sqlite3.Error as exc:
            logger.warning("review_settings_recovered", reason="read_failed", error=str(exc))
            return ReviewSettings()

        current = self._decode(row)
        if current is not None:
            return current
        fresh = self._defaults(row)
        try:
            self._write(fresh)
        except PersistenceError as exc:
            # 既定値は返せるので読み出し自体は成功させる
            logger.warning("review_settings_recovered", reason="write_failed", error=str(exc))
        return fresh

    def put(self, settings: ReviewSettings) -> ReviewSettings:
        self._write(settings)
        return settings

    def update(self, **changes: Any) -> ReviewSettings:
        return self._modify(lambda current: apply_settings_changes(current, changes, self._now()))

    def reset(self) -> ReviewSettings:
        fresh = self._modify(lambda current: default_settings_after(current, self._now()))
        logger.info("review_settings_reset", version=fresh.version)
        return fresh

    # --- helpers ---
    @staticmethod
    def _select(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT setting_value, version FROM app_settings WHERE setting_key = ?;",
            (SETTINGS_KEY,),
        ).fetchone()

    def _read(self) -> Optional[sqlite3.Row]:
        conn = self._connect()
        try:
            return self._select(conn)
        finally:
            conn.close()

    @staticmethod
    def _decode(row: Optional[sqlite3.Row]) -> Optional[ReviewSettings]:
        """Stored settings, or None when the row is missing or unusable."""

        if row is None:
            return None
        try:
            return ReviewSettings.model_validate_json(row["setting_value"])
        except ValidationError as exc:
            logger.warning(
                "review_settings_recovered",
                reason="invalid_payload",
                stored_version=row["version"],
                error=str(exc),
            )
            return None

    def _defaults(self, row: Optional[sqlite3.Row]) -> ReviewSettings:
        now = self._now()
        version = int(row["version"]) + 1 if row is not None else 1
        return ReviewSettings(version=version, created_at=now, updated_at=now)

    def _modify(self, change: Callable[[ReviewSettings], ReviewSettings]) -> ReviewSettings:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            row = self._select(conn)
            current = self._decode(row)
            if current is None:
                current = self._defaults(row)
            updated = change(current)
            self._upsert(conn, updated)
            conn.execute("COMMIT;")
            return updated
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise PersistenceError(f"failed to save review settings: {exc}") from exc
        except Exception:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def _write(self, settings: ReviewSettings) -> None:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            self._upsert(conn, settings)
            conn.execute("COMMIT;")
        except sqlite3.Error as exc:
            self._rollback(conn)
            raise PersistenceError(f"failed to save review settings: {exc}") from exc
        finally:
            conn.close()

    @staticmethod
    def _upsert(conn: sqlite3.Connection, settings: ReviewSettings) -> None:
        conn.execute(
            """
            INSERT INTO app_settings(setting_key, category, setting_value, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(setting_key) DO UPDATE SET
                setting_value = excluded.setting_value,
                version = excluded.version,
                updated_at = excluded.updated_at;
            """,
            (
                SETTINGS_KEY,
                SETTINGS_CATEGORY,
                settings.model_dump_json(),
                settings.version,
                _iso(settings.created_at),
                _iso(settings.updated_at),
            ),
        )
