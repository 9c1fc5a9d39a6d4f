"""Learner profile, review queue and dashboard statistics.

全トピックの復習状態から、パーソナライズ用のユーザープロファイル、
今日復習すべきトピックの優先順キュー、ダッシュボード用の集計を導出する。
いずれも読み取り専用で、状態を変更しない。
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List

from .clock import days_until, ensure_utc
from .models.review import ReviewState, ReviewStats, UserProfile


DEFAULT_RETENTION_RATE = 0.75
DEFAULT_PREFERRED_DIFFICULTY = 0.6
MATURE_CYCLE_INDEX = 3


def derive_user_profile(
    states: Iterable[ReviewState],
    default_response_time: float = 45.0,
) -> UserProfile:
    """Aggregate all topic states into a learner profile.

    - average_retention_rate: Σ(平均品質 × 復習数) / Σ復習数 / 5
    - learning_velocity: 平均連続正解数 / 10（0〜1）
    - forgetting_curve: 0.5 − 平均失敗数 × 0.1（0.2〜0.8）
    - average_response_time: 履歴の平均回答時間（履歴なしは既定値）
    """

    items = list(states)
    if not items:
        return UserProfile(
            average_retention_rate=DEFAULT_RETENTION_RATE,
            preferred_difficulty=DEFAULT_PREFERRED_DIFFICULTY,
            average_response_time=default_response_time,
        )

    total_reviews = sum(s.total_reviews for s in items)
    total_quality = sum(s.average_quality * s.total_reviews for s in items)
    retention = total_quality / total_reviews / 5 if total_reviews > 0 else DEFAULT_RETENTION_RATE

    average_streak = sum(s.streak_count for s in items) / len(items)
    failure_rate = sum(s.failure_count for s in items) / len(items)

    response_times = [entry.response_time for s in items for entry in s.history]
    average_response_time = (
        sum(response_times) / len(response_times) if response_times else default_response_time
    )

    return UserProfile(
        average_retention_rate=min(1.0, max(0.0, retention)),
        preferred_difficulty=DEFAULT_PREFERRED_DIFFICULTY,
        average_response_time=average_response_time,
        learning_velocity=min(1.0, max(0.0, average_streak / 10)),
        forgetting_curve=max(0.2, min(0.8, 0.5 - failure_rate * 0.1)),
        total_review_sessions=total_reviews,
    )


def cards_ready_for_review(
    states: Iterable[ReviewState],
    now: datetime,
    max_cards: int = 20,
) -> List[ReviewState]:
    """Blocked topics whose date has come, most urgent first.

    優先順: 失敗数の多い順 → 試験日の近い順（試験日なしは後ろ）
    → 予定日の古い順。
    """

    now = ensure_utc(now)

    def _priority(state: ReviewState) -> tuple[int, float, datetime]:
        exam_days = days_until(state.exam_date, now) if state.exam_date is not None else math.inf
        return (-state.failure_count, exam_days, state.next_review_date)

    ready = sorted((s for s in states if s.is_due(now)), key=_priority)
    return ready[: max(0, max_cards)]


def calculate_review_stats(states: Iterable[ReviewState], now: datetime) -> ReviewStats:
    """Summary numbers for the review dashboard."""

    now = ensure_utc(now)
    items = list(states)
    ready = [s for s in items if s.is_due(now)]
    overdue = [s for s in ready if s.next_review_date < now]
    reviewed = [s for s in items if s.total_reviews > 0]

    count = len(items)
    return ReviewStats(
        total_cards=count,
        ready_for_review=len(ready),
        overdue_cards=len(overdue),
        average_ease_factor=sum(s.ease_factor for s in items) / count if count else 2.5,
        average_interval=sum(s.interval_days for s in items) / count if count else 1.0,
        retention_rate=sum(s.average_quality for s in reviewed) / max(1, len(reviewed)) / 5,
        cards_learning=sum(1 for s in items if s.cycle_index < MATURE_CYCLE_INDEX),
        cards_mature=sum(1 for s in items if s.cycle_index >= MATURE_CYCLE_INDEX),
    )
