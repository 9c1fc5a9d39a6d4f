"""Review orchestration: the only writer of review state.

学習者が復習を終えたときの「部屋の判定 → スケジュール計算 → 保存」、
試験日変更時の一括再計算、予定日到来トピックのアンロックを担う。
同一トピックへの読み込み〜保存はトピック単位のロックで直列化される。
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from structlog import contextvars as structlog_contextvars

from .clock import start_of_day, utc_now
from .config import Settings, settings as default_settings
from .errors import PersistenceError, ReviewValidationError
from .logging import logger
from .models.review import ReviewState, ReviewStats, UserProfile
from .models.room import Room, classify_room
from .models.settings import DifficultyLevel, ReviewSettings, get_difficulty_settings
from .profile import calculate_review_stats, cards_ready_for_review, derive_user_profile
from .scheduler import (
    new_review_state,
    process_review,
    reschedule,
    validate_confidence,
    validate_quality,
    validate_response_time,
)
from .store import create_stores
from .store.base import AccuracyProvider, ReviewStateStore, SettingsStore


class ReviewOrchestrator:
    """Entry point used by the study flow and dashboards.

    Collaborators are injected:
    - store: ReviewStateStore（レビュー状態）
    - settings_store: SettingsStore（ReviewSettings の単一レコード）
    - accuracy_provider: 問題の回答数・正答数（今回の回答を含むこと）
    - clock: 現在時刻（テストでは固定時計を渡す）
    - profile_provider: パーソナライズ用プロファイル。省略時は全状態から導出し、
      profile_cache_seconds の間は再利用する（0 で毎回導出）

    遅延書き込みのストアを使う場合は、終了前に flush() か close() を呼ぶ。
    """

    def __init__(
        self,
        store: ReviewStateStore,
        settings_store: SettingsStore,
        accuracy_provider: AccuracyProvider,
        clock: Callable[[], datetime] = utc_now,
        profile_provider: Optional[Callable[[], UserProfile]] = None,
        default_response_time: float = 45.0,
        profile_cache_seconds: float = 300.0,
    ) -> None:
        self._store = store
        self._settings_store = settings_store
        self._accuracy = accuracy_provider
        self._clock = clock
        self._profile_provider = profile_provider
        self._default_response_time = default_response_time
        self._profile_ttl = max(0.0, float(profile_cache_seconds))
        self._profile_cache: Optional[Tuple[datetime, UserProfile]] = None
        self._profile_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # --- locking ---
    def _topic_lock(self, topic_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(topic_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[topic_id] = lock
            return lock

    @contextmanager
    def _exclusive(self, topic_id: str, operation: str) -> Iterator[None]:
        with self._topic_lock(topic_id):
            with structlog_contextvars.bound_contextvars(topic_id=topic_id, operation=operation):
                yield

    # --- reads ---
    def classify_room(self, topic_id: str) -> Room:
        counts = self._accuracy.get_accuracy(topic_id)
        return classify_room(counts.answered, counts.correct)

    def get_review_state(self, topic_id: str) -> Optional[ReviewState]:
        return self._store.get(topic_id)

    def get_or_create(self, topic_id: str) -> ReviewState:
        """Stored state, or unsaved defaults for a topic never reviewed."""

        state = self._store.get(topic_id)
        return state if state is not None else new_review_state(topic_id, self._clock())

    def user_profile(self, refresh: bool = False) -> UserProfile:
        """Learner profile; a derived one is reused until it is older than the cache window."""

        if self._profile_provider is not None:
            return self._profile_provider()

        now = self._clock()
        with self._profile_guard:
            cached = self._profile_cache
        if not refresh and cached is not None and (now - cached[0]).total_seconds() < self._profile_ttl:
            return cached[1]

        profile = derive_user_profile(self._store.list_all(), self._default_response_time)
        with self._profile_guard:
            self._profile_cache = (now, profile)
        return profile

    def ready_for_review(self, max_cards: Optional[int] = None) -> List[ReviewState]:
        """Due topics ordered by urgency, capped at the daily review limit by default."""

        if max_cards is None:
            max_cards = self._settings_store.get().daily_review_limit
        return cards_ready_for_review(self._store.list_all(), self._clock(), max_cards)

    def review_stats(self) -> ReviewStats:
        return calculate_review_stats(self._store.list_all(), self._clock())

    def difficulty_settings(self, level: DifficultyLevel | str) -> ReviewSettings:
        try:
            return get_difficulty_settings(self._settings_store.get(), level)
        except ValueError as exc:
            raise ReviewValidationError(f"unknown difficulty level: {level!r}") from exc

    # --- writes ---
    def complete_review(
        self,
        topic_id: str,
        exam_date: Optional[datetime] = None,
        quality: Optional[float] = None,
        response_time: Optional[float] = None,
        confidence_level: Optional[str] = None,
    ) -> Room:
        """Record a finished review and schedule the next one.

        Args:
            topic_id: 対象トピック
            exam_date: 試験日。省略時は保存済みの試験日を引き継ぐ
            quality: 0〜5 の自己評価。None なら固定テーブル（旧方式）
            response_time: 回答時間（秒）
            confidence_level: certeza / duvida / chute

        Returns:
            判定された部屋

        Raises:
            ReviewValidationError: 入力不正（状態は変更されない）
            PersistenceError: 保存失敗（保存済みの状態は変更されない）
        """
        if not topic_id:
            raise ReviewValidationError("topic_id must not be empty")
        validate_quality(quality)
        validate_response_time(response_time)
        validate_confidence(confidence_level)

        with self._exclusive(topic_id, "complete_review"):
            state = self.get_or_create(topic_id)
            room = self.classify_room(topic_id)
            settings = self._settings_store.get()
            profile = self.user_profile() if quality is not None and settings.personalized_intervals else None
            now = self._clock()

            updated = process_review(
                state,
                room,
                settings,
                now,
                exam_date=exam_date if exam_date is not None else state.exam_date,
                quality=quality,
                response_time=response_time,
                confidence_level=confidence_level,
                profile=profile,
            )
            try:
                self._store.put(updated)
            except PersistenceError:
                logger.error("review_save_failed", room=room, cycle_index=state.cycle_index)
                raise

            logger.info(
                "review_completed",
                room=room,
                mode="legacy" if quality is None else "intelligent",
                cycle_index=updated.cycle_index,
                interval_days=round(updated.interval_days, 3),
                next_review_date=updated.next_review_date,
                total_reviews=updated.total_reviews,
            )
            return room

    def recalc_all_on_exam_change(self, new_exam_date: Optional[datetime] = None) -> List[str]:
        """Re-plan every known topic against a new (or removed) exam date.

        固定テーブルと保存済みの cycle_index で次回予定日だけを再計算する。
        回数・ease・ブロック状態は変更しない。
        """

        updated_ids: List[str] = []
        for known in self._store.list_all():
            with self._exclusive(known.topic_id, "recalc_all_on_exam_change"):
                current = self._store.get(known.topic_id)
                if current is None:
                    continue
                room = self.classify_room(current.topic_id)
                self._store.put(reschedule(current, room, self._clock(), new_exam_date))
                updated_ids.append(current.topic_id)

        logger.info(
            "exam_date_recalculated",
            exam_date=new_exam_date,
            topics=len(updated_ids),
        )
        return updated_ids

    def unlock_due_reviews(self, now: Optional[datetime] = None) -> List[str]:
        """Unblock topics whose review day has come; returns the unlocked ids.

        二重実行しても結果は同じ。ロック取得後に読み直し、その間に復習が
        完了して未来の日付で再ブロックされたトピックはスキップする。
        """

        cutoff = start_of_day(now if now is not None else self._clock())
        unlocked: List[str] = []
        for candidate in self._store.list_due(cutoff):
            with self._exclusive(candidate.topic_id, "unlock_due_reviews"):
                current = self._store.get(candidate.topic_id)
                if current is None or not current.is_due(cutoff):
                    continue
                self._store.put(current.model_copy(update={"is_blocked": False}))
                unlocked.append(current.topic_id)

        if unlocked:
            logger.info("reviews_unlocked", count=len(unlocked), cutoff=cutoff)
        return unlocked

    # --- durability ---
    def flush(self) -> int:
        """Write deferred review states now; returns how many were written.

        同期書き込みのストアでは何もせず 0 を返す。失敗時は PersistenceError を送出し、
        未保存分は次回の flush まで保持される。
        """

        flush = getattr(self._store, "flush", None)
        if flush is None:
            return 0
        written = flush()
        if written:
            logger.info("reviews_flushed", count=written)
        return written

    def close(self) -> None:
        """Flush outstanding writes; call on shutdown."""

        close = getattr(self._store, "close", None)
        if close is not None:
            close()


def create_orchestrator(
    accuracy_provider: AccuracyProvider,
    app_settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
) -> ReviewOrchestrator:
    """Wire an orchestrator to the SQLite stores configured by ``app_settings``.

    Review states are written behind a debounce; call ``flush()`` when a write
    must be durable before continuing. Pending writes are also flushed at exit.
    """

    cfg = app_settings or default_settings
    store, settings_store = create_stores(cfg)
    return ReviewOrchestrator(
        store,
        settings_store,
        accuracy_provider,
        clock=clock,
        default_response_time=cfg.default_average_response_time,
        profile_cache_seconds=cfg.profile_cache_seconds,
    )
