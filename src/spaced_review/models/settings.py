from __future__ import annotations

import math
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from ..clock import utc_now


ABSOLUTE_MAX_EASE_FACTOR = 3.0
ABSOLUTE_MIN_EASE_FACTOR = 1.1
PERSONALIZATION_MIN_REVIEWS = 10
EXAM_HORIZON_DAYS = 90


class DifficultyLevel(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class ReviewSettings(BaseModel):
    """User-tunable bounds for every number the scheduler produces.

    復習アルゴリズムの設定。単一レコードとして保存され、更新のたびに
    ``version`` が進む。読み出しに失敗した場合は既定値で作り直される。
    """

    # 算法の ease 係数
    max_ease_factor: float = Field(default=2.5, gt=0)
    min_ease_factor: float = Field(default=1.3, gt=0)
    ease_factor_modifier: float = Field(default=0.15, ge=0)

    # 初期間隔（日）
    initial_interval: float = Field(default=1, gt=0)
    graduation_interval: float = Field(default=4, gt=0)
    easy_interval: float = Field(default=7, gt=0)

    # 間隔の上下限と倍率
    max_interval: float = Field(default=365, gt=0)
    min_interval: float = Field(default=1, gt=0)
    interval_multiplier: float = Field(default=1.0, gt=0)

    # 回答の出来による倍率
    hard_multiplier: float = Field(default=0.8, gt=0)
    easy_multiplier: float = Field(default=1.3, gt=0)
    lapse_multiplier: float = Field(default=0.5, gt=0)

    # 試験モード
    exam_mode_enabled: bool = False
    exam_urgency_factor: float = Field(default=0.7, gt=0)

    # 1日あたりの上限
    daily_review_limit: int = Field(default=100, ge=0)
    new_cards_per_day: int = Field(default=20, ge=0)

    # パーソナライズ
    adaptive_learning: bool = True
    personalized_intervals: bool = True
    forgetting_curve_adjustment: bool = True

    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ReviewSettings":
        if self.min_ease_factor > self.max_ease_factor:
            raise ValueError("min_ease_factor must not exceed max_ease_factor")
        if self.min_interval > self.max_interval:
            raise ValueError("min_interval must not exceed max_interval")
        return self


def get_difficulty_settings(base: ReviewSettings, level: DifficultyLevel | str) -> ReviewSettings:
    """Settings view for material of the given difficulty (base is untouched)."""

    level = DifficultyLevel(level)
    if level is DifficultyLevel.easy:
        return base.model_copy(
            update={
                "initial_interval": math.ceil(base.initial_interval * base.easy_multiplier),
                "interval_multiplier": base.interval_multiplier * 1.1,
            }
        )
    if level is DifficultyLevel.hard:
        return base.model_copy(
            update={
                "initial_interval": math.ceil(base.initial_interval * base.hard_multiplier),
                "interval_multiplier": base.interval_multiplier * 0.9,
            }
        )
    return base


def get_exam_mode_settings(base: ReviewSettings, days_until_exam: int) -> ReviewSettings:
    """Compress intervals and raise daily caps as the exam approaches.

    試験モードが無効、または試験日を過ぎている場合は base をそのまま返す。
    緊急度 = clamp(残日数/90, 0.3, 1) × exam_urgency_factor。
    """

    if not base.exam_mode_enabled or days_until_exam <= 0:
        return base

    urgency = max(0.3, min(1.0, days_until_exam / EXAM_HORIZON_DAYS)) * base.exam_urgency_factor
    return base.model_copy(
        update={
            "max_interval": min(base.max_interval, math.ceil(days_until_exam * 0.3)),
            "interval_multiplier": base.interval_multiplier * urgency,
            "daily_review_limit": math.ceil(base.daily_review_limit * (2 - urgency)),
            "new_cards_per_day": math.ceil(base.new_cards_per_day * (1.5 - urgency * 0.5)),
        }
    )


def get_personalized_settings(
    base: ReviewSettings,
    retention_rate: float,
    average_response_time: float,
    total_reviews: int,
) -> ReviewSettings:
    """Scale intervals and ease bounds from the learner's history.

    履歴が 10 件未満、または personalized_intervals が無効なら何もしない。
    ease の上下限は絶対値 [1.1, 3.0] の範囲に収める。
    """

    if not base.personalized_intervals or total_reviews < PERSONALIZATION_MIN_REVIEWS:
        return base

    interval_modifier = 1.0
    if retention_rate > 0.9:
        interval_modifier = 1.2
    elif retention_rate < 0.7:
        interval_modifier = 0.8

    ease_modifier = 1.0
    if average_response_time < 30:
        ease_modifier = 1.1
    elif average_response_time > 120:
        ease_modifier = 0.9

    return base.model_copy(
        update={
            "interval_multiplier": base.interval_multiplier * interval_modifier,
            "ease_factor_modifier": base.ease_factor_modifier * ease_modifier,
            "max_ease_factor": min(ABSOLUTE_MAX_EASE_FACTOR, base.max_ease_factor * ease_modifier),
            "min_ease_factor": max(ABSOLUTE_MIN_EASE_FACTOR, base.min_ease_factor * ease_modifier),
        }
    )
