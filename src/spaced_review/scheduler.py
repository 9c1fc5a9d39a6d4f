"""
Scheduler - review interval and ease logic

Pure scheduling and state updates (no store calls).

Two modes, selected by whether a quality score is supplied:
- legacy: fixed day table indexed by the cycle index
- intelligent: SM-2 style ease update with room-capped quality,
  exam/personalized settings and bounded interval growth

Loading and saving the state is the orchestrator's job.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from .clock import add_days, days_until, ensure_utc, start_of_day
from .errors import ReviewValidationError
from .models.review import (
    DEFAULT_RESPONSE_TIME,
    MAX_CYCLE_INDEX,
    ConfidenceLevel,
    ReviewHistoryEntry,
    ReviewState,
    UserProfile,
)
from .models.room import Room
from .models.settings import (
    ReviewSettings,
    get_exam_mode_settings,
    get_personalized_settings,
)


# ---- Legacy day table ----

LEGACY_INTERVALS: tuple[int, ...] = (1, 3, 7, 15, 30)
LEGACY_MAX_INTERVAL = 30

# Only applied on the very first cycle
FIRST_CYCLE_ROOM_DAYS = {
    Room.vermelha: 1,
    Room.amarela: 3,
    Room.verde: 7,
}

# ---- Quality ----

MIN_QUALITY = 0.0
MAX_QUALITY = 5.0
PASSING_QUALITY = 3.0

ROOM_QUALITY_CAP = {
    Room.vermelha: 2.0,
    Room.amarela: 3.0,
}


def validate_quality(quality: Optional[float]) -> Optional[float]:
    """Reject anything that is not a number in [0, 5]."""

    if quality is None:
        return None
    if isinstance(quality, bool) or not isinstance(quality, (int, float)):
        raise ReviewValidationError(f"quality must be a number in [0, 5], got {quality!r}")
    if math.isnan(quality) or not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ReviewValidationError(f"quality must be within [0, 5], got {quality!r}")
    return float(quality)


def validate_response_time(response_time: Optional[float]) -> float:
    if response_time is None:
        return DEFAULT_RESPONSE_TIME
    if isinstance(response_time, bool) or not isinstance(response_time, (int, float)):
        raise ReviewValidationError(f"response_time must be a number of seconds, got {response_time!r}")
    if math.isnan(response_time) or response_time < 0:
        raise ReviewValidationError(f"response_time must be >= 0, got {response_time!r}")
    return float(response_time)


def validate_confidence(confidence_level: Optional[str]) -> ConfidenceLevel:
    if confidence_level is None:
        return ConfidenceLevel.certeza
    try:
        return ConfidenceLevel(confidence_level)
    except ValueError as exc:
        raise ReviewValidationError(f"unknown confidence level: {confidence_level!r}") from exc


def new_review_state(topic_id: str, now: datetime) -> ReviewState:
    """Defaults for a topic that has never been reviewed."""

    return ReviewState(topic_id=topic_id, next_review_date=start_of_day(now))


# ---- Building blocks ----

def legacy_interval_days(room: Room, cycle_index: int) -> int:
    """Day offset from the fixed table; the room only matters on cycle 0."""

    if cycle_index == 0 and room in FIRST_CYCLE_ROOM_DAYS:
        return FIRST_CYCLE_ROOM_DAYS[room]
    if 0 <= cycle_index < len(LEGACY_INTERVALS):
        return LEGACY_INTERVALS[cycle_index]
    return LEGACY_MAX_INTERVAL


def clamp_quality_to_room(quality: float, room: Room) -> float:
    """A topic with poor measured accuracy cannot be credited with high quality."""

    cap = ROOM_QUALITY_CAP.get(room)
    return min(quality, cap) if cap is not None else quality


def update_ease_factor(ease_factor: float, quality: float, settings: ReviewSettings) -> float:
    """SM-2 ease update, clamped to the ease bounds of ``settings``."""

    miss = MAX_QUALITY - quality
    updated = ease_factor + (0.1 - miss * (0.08 + miss * 0.02))
    return max(settings.min_ease_factor, min(settings.max_ease_factor, updated))


def next_interval_days(
    cycle_index: int,
    ease_factor: float,
    quality: float,
    settings: ReviewSettings,
) -> float:
    """
    Interval growth for the intelligent mode.

    Args:
        cycle_index: Cycle index before this review
        ease_factor: Ease factor after this review
        quality: Room-capped quality
        settings: Resolved settings

    Returns:
        Interval in days, clamped to [min_interval, max_interval]
    """
    if cycle_index == 0:
        interval = settings.initial_interval
    else:
        # the cycle index stands in for the previous interval
        previous_interval = max(1, cycle_index)
        interval = previous_interval * ease_factor * settings.interval_multiplier

    if quality < PASSING_QUALITY:
        interval *= settings.lapse_multiplier
    elif quality == MAX_QUALITY:
        interval *= settings.easy_multiplier

    return max(settings.min_interval, min(settings.max_interval, interval))


def clamp_to_exam(next_review: datetime, exam_date: Optional[datetime], now: datetime) -> datetime:
    """Never schedule past the exam; a past exam makes the topic due today."""

    if exam_date is None:
        return next_review
    exam_date = ensure_utc(exam_date)
    if exam_date < ensure_utc(now):
        return start_of_day(now)
    if next_review > exam_date:
        return exam_date
    return next_review


def resolve_settings(
    base: ReviewSettings,
    exam_date: Optional[datetime],
    now: datetime,
    profile: Optional[UserProfile] = None,
) -> ReviewSettings:
    """Pick exam-adjusted, personalized or plain settings, in that order."""

    if exam_date is not None and base.exam_mode_enabled:
        return get_exam_mode_settings(base, days_until(exam_date, now))
    if profile is not None and base.personalized_intervals:
        return get_personalized_settings(
            base,
            retention_rate=profile.average_retention_rate,
            average_response_time=profile.average_response_time,
            total_reviews=profile.total_review_sessions,
        )
    return base


def _elapsed_days(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() / 86400.0)


# ---- Public API ----

def reschedule(
    state: ReviewState,
    room: Room,
    now: datetime,
    exam_date: Optional[datetime],
) -> ReviewState:
    """
    Recompute only the next review date with the legacy table.

    Used when the exam date changes after planning began: counters,
    ease and the blocking flag are left as they are.
    """
    today = start_of_day(now)
    next_review = clamp_to_exam(add_days(today, legacy_interval_days(room, state.cycle_index)), exam_date, now)
    return state.model_copy(
        update={
            "next_review_date": next_review,
            "exam_date": ensure_utc(exam_date) if exam_date is not None else None,
            "interval_days": _elapsed_days(today, next_review),
        }
    )


def process_review(
    state: ReviewState,
    room: Room,
    settings: ReviewSettings,
    now: datetime,
    exam_date: Optional[datetime] = None,
    quality: Optional[float] = None,
    response_time: Optional[float] = None,
    confidence_level: Optional[str] = None,
    profile: Optional[UserProfile] = None,
) -> ReviewState:
    """
    Apply one completed review and return the updated state.

    No store calls; ``state`` itself is not modified.

    Args:
        state: Current state (fresh defaults for a first review)
        room: Room classified from current accuracy
        settings: Stored review settings (resolved here per exam/profile)
        now: Review timestamp
        exam_date: Optional deadline; the result never lands after it
        quality: 0-5 quality; None selects the legacy table
        response_time: Seconds taken to answer (history only)
        confidence_level: certeza / duvida / chute (history only)
        profile: Learner profile for personalized settings

    Returns:
        New ReviewState, blocked until its next review date

    Raises:
        ReviewValidationError: quality, response time or confidence out of range
    """
    quality = validate_quality(quality)
    seconds = validate_response_time(response_time)
    confidence = validate_confidence(confidence_level)

    today = start_of_day(now)
    cycle_index = state.cycle_index
    updates: dict = {
        "cycle_index": min(cycle_index + 1, MAX_CYCLE_INDEX),
        "is_blocked": True,
        "last_review_date": today,
        "total_reviews": state.total_reviews + 1,
        "exam_date": ensure_utc(exam_date) if exam_date is not None else None,
    }

    if quality is None:
        next_review = add_days(today, legacy_interval_days(room, cycle_index))
        history = list(state.history)
    else:
        effective_quality = clamp_quality_to_room(quality, room)
        active = resolve_settings(settings, exam_date, now, profile)

        # stored bounds for the persisted ease, resolved bounds for this interval only
        ease_factor = update_ease_factor(state.ease_factor, effective_quality, settings)
        interval_ease = update_ease_factor(state.ease_factor, effective_quality, active)
        was_correct = effective_quality >= PASSING_QUALITY
        interval = next_interval_days(cycle_index, interval_ease, effective_quality, active)
        next_review = add_days(today, interval)

        updates.update(
            ease_factor=ease_factor,
            average_quality=(state.average_quality * state.total_reviews + effective_quality)
            / (state.total_reviews + 1),
            streak_count=state.streak_count + 1 if was_correct else 0,
            failure_count=0 if was_correct else state.failure_count + 1,
        )
        history = [
            *state.history,
            ReviewHistoryEntry(
                date=now,
                quality=effective_quality,
                response_time=seconds,
                was_correct=was_correct,
                confidence_level=confidence,
            ),
        ]

    next_review = clamp_to_exam(next_review, exam_date, now)
    updates["next_review_date"] = next_review
    updates["interval_days"] = _elapsed_days(today, next_review)
    updates["history"] = history

    return ReviewState.model_validate({**state.model_dump(), **updates})
