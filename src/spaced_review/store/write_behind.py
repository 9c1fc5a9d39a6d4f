from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Optional

from ..errors import PersistenceError
from ..logging import logger
from ..models.review import ReviewState
from .base import ReviewStateStore


class WriteBehindReviewStore:
    """Review store that batches writes to a slower backing store.

    put はメモリ上の未保存キューに積み、``delay_ms`` のデバウンス後に
    まとめて backing へ書き出す。未保存の状態は get / list 系から常に
    見えるため、直後の読み出しが古い値を返すことはない。

    - delay_ms == 0: put の度に同期的に書き出す（失敗は put から送出され、
      その状態は読み出しにも現れない）
    - flush(): 未保存分を即時に書き出す。失敗した分はキューに残る
    - タイマー経由の書き出しが失敗した場合はログを出して再スケジュールする
    """

    def __init__(
        self,
        backing: ReviewStateStore,
        delay_ms: int = 1000,
        timer_factory: Callable[[float, Callable[[], None]], threading.Timer] = threading.Timer,
    ) -> None:
        self._backing = backing
        self._delay = max(0, delay_ms) / 1000.0
        self._timer_factory = timer_factory
        self._pending: Dict[str, ReviewState] = {}
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # --- ReviewStateStore ---
    def get(self, topic_id: str) -> ReviewState | None:
        with self._lock:
            pending = self._pending.get(topic_id)
            if pending is not None:
                return pending.model_copy(deep=True)
        return self._backing.get(topic_id)

    def put(self, state: ReviewState) -> None:
        queued = state.model_copy(deep=True)
        with self._lock:
            self._pending[state.topic_id] = queued
        if self._delay > 0:
            self.schedule_save()
            return
        try:
            self.flush()
        except PersistenceError:
            # 同期書き込みの失敗は put の失敗として扱い、キューから外す
            with self._lock:
                if self._pending.get(state.topic_id) is queued:
                    del self._pending[state.topic_id]
            raise

    def list_due(self, now: datetime) -> list[ReviewState]:
        return [s for s in self.list_all() if s.is_due(now)]

    def list_all(self) -> list[ReviewState]:
        merged = {s.topic_id: s for s in self._backing.list_all()}
        with self._lock:
            for topic_id, state in self._pending.items():
                merged[topic_id] = state.model_copy(deep=True)
        return list(merged.values())

    # --- write-behind control ---
    def schedule_save(self) -> None:
        """(Re)start the debounce timer."""

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = self._timer_factory(self._delay, self._flush_from_timer)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def flush(self) -> int:
        """Write every pending state to the backing store; returns how many were written."""

        with self._flush_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                snapshot = list(self._pending.items())

            written = 0
            for topic_id, state in snapshot:
                try:
                    self._backing.put(state)
                except PersistenceError:
                    raise
                except Exception as exc:
                    raise PersistenceError(f"write-behind flush failed for {topic_id!r}: {exc}") from exc
                with self._lock:
                    # 書き出し中に新しい put があれば残す
                    if self._pending.get(topic_id) is state:
                        del self._pending[topic_id]
                written += 1
            return written

    def close(self) -> None:
        """Flush outstanding writes; call on shutdown."""

        self.flush()

    def _flush_from_timer(self) -> None:
        try:
            self.flush()
        except PersistenceError as exc:
            logger.error("write_behind_flush_failed", pending=self.pending_count, error=str(exc))
            self.schedule_save()
