from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..clock import ensure_utc, utc_now


MAX_CYCLE_INDEX = 5
DEFAULT_EASE_FACTOR = 2.5
DEFAULT_RESPONSE_TIME = 60.0


class ConfidenceLevel(str, Enum):
    """Learner's self-reported certainty for an answer."""

    certeza = "certeza"
    duvida = "duvida"
    chute = "chute"


class AccuracyCounts(BaseModel):
    """Aggregate answer counts for a topic, as reported by the question subsystem."""

    answered: int
    correct: int

    @property
    def accuracy(self) -> float:
        return self.correct / self.answered * 100 if self.answered > 0 else 0.0


class ReviewHistoryEntry(BaseModel):
    """One completed, graded review of a topic."""

    date: datetime
    quality: float = Field(ge=0, le=5)
    response_time: float = Field(default=DEFAULT_RESPONSE_TIME, ge=0)
    was_correct: bool
    confidence_level: ConfidenceLevel = ConfidenceLevel.certeza

    @field_validator("date", mode="after")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ReviewState(BaseModel):
    """Persisted scheduling state of a single topic.

    トピック毎の復習状態。最初の復習完了時に作成され、以後はスケジューラと
    オーケストレータだけが更新する。UI やゲーミフィケーション側は表示用に
    読み取るのみ。

    - cycle_index: 完了した復習ラウンド数（5 で飽和）
    - is_blocked: 復習直後から次回予定日までは True
    - history: 採点付き復習の追記専用ログ（時系列順）
    """

    model_config = ConfigDict(validate_assignment=True)

    topic_id: str = Field(min_length=1, frozen=True)
    cycle_index: int = Field(default=0, ge=0, le=MAX_CYCLE_INDEX)
    ease_factor: float = Field(default=DEFAULT_EASE_FACTOR, gt=0)
    average_quality: float = Field(default=0.0, ge=0, le=5)
    streak_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    personalized_multiplier: float = Field(default=1.0, gt=0)
    is_blocked: bool = False
    next_review_date: datetime = Field(default_factory=utc_now)
    last_review_date: datetime | None = None
    interval_days: float = Field(default=0.0, ge=0)
    total_reviews: int = Field(default=0, ge=0)
    exam_date: datetime | None = None
    history: list[ReviewHistoryEntry] = Field(default_factory=list)

    @field_validator("next_review_date", "last_review_date", "exam_date", mode="after")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def is_due(self, cutoff: datetime) -> bool:
        """Blocked and scheduled at or before ``cutoff``."""

        return self.is_blocked and self.next_review_date <= ensure_utc(cutoff)


class UserProfile(BaseModel):
    """Learner statistics used to personalize review settings."""

    average_retention_rate: float = Field(default=0.75, ge=0, le=1)
    preferred_difficulty: float = Field(default=0.6, ge=0, le=1)
    average_response_time: float = Field(default=45.0, ge=0)
    learning_velocity: float = Field(default=0.5, ge=0, le=1)
    forgetting_curve: float = Field(default=0.5, ge=0, le=1)
    total_review_sessions: int = Field(default=0, ge=0)


class ReviewStats(BaseModel):
    """Dashboard summary over all review states."""

    total_cards: int
    ready_for_review: int
    overdue_cards: int
    average_ease_factor: float
    average_interval: float
    retention_rate: float
    cards_learning: int
    cards_mature: int
