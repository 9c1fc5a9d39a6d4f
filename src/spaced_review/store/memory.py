from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Dict

from ..clock import utc_now
from ..logging import logger
from ..models.review import AccuracyCounts, ReviewState
from ..models.settings import ReviewSettings
from .base import apply_settings_changes, default_settings_after


class InMemoryReviewStore:
    """Dict-backed review state store.

    テストや短命なプロセス向け。受け取った状態・返す状態はどちらも
    複製なので、呼び出し側の変更がストア内部へ漏れない。
    """

    def __init__(self) -> None:
        self._states: Dict[str, ReviewState] = {}
        self._lock = threading.Lock()

    def get(self, topic_id: str) -> ReviewState | None:
        with self._lock:
            state = self._states.get(topic_id)
            return state.model_copy(deep=True) if state is not None else None

    def put(self, state: ReviewState) -> None:
        with self._lock:
            self._states[state.topic_id] = state.model_copy(deep=True)

    def list_due(self, now: datetime) -> list[ReviewState]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._states.values() if s.is_due(now)]

    def list_all(self) -> list[ReviewState]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._states.values()]


class InMemorySettingsStore:
    def __init__(self, initial: ReviewSettings | None = None, now: Callable[[], datetime] = utc_now) -> None:
        self._now = now
        self._settings = initial or ReviewSettings()
        self._lock = threading.Lock()

    def get(self) -> ReviewSettings:
        with self._lock:
            return self._settings.model_copy(deep=True)

    def put(self, settings: ReviewSettings) -> ReviewSettings:
        with self._lock:
            self._settings = settings.model_copy(deep=True)
            return settings

    def update(self, **changes: Any) -> ReviewSettings:
        with self._lock:
            self._settings = apply_settings_changes(self._settings, changes, self._now())
            return self._settings.model_copy(deep=True)

    def reset(self) -> ReviewSettings:
        with self._lock:
            self._settings = default_settings_after(self._settings, self._now())
            logger.info("review_settings_reset", version=self._settings.version)
            return self._settings.model_copy(deep=True)


class InMemoryAccuracyProvider:
    """Attempt counter standing in for the question subsystem."""

    def __init__(self) -> None:
        self._counts: Dict[str, AccuracyCounts] = {}
        self._lock = threading.Lock()

    def record_attempt(self, topic_id: str, correct: bool) -> None:
        with self._lock:
            current = self._counts.get(topic_id, AccuracyCounts(answered=0, correct=0))
            self._counts[topic_id] = AccuracyCounts(
                answered=current.answered + 1,
                correct=current.correct + (1 if correct else 0),
            )

    def set_counts(self, topic_id: str, answered: int, correct: int) -> None:
        with self._lock:
            self._counts[topic_id] = AccuracyCounts(answered=answered, correct=correct)

    def get_accuracy(self, topic_id: str) -> AccuracyCounts:
        with self._lock:
            return self._counts.get(topic_id, AccuracyCounts(answered=0, correct=0))
