"""Adaptive spaced-repetition review scheduler."""

from .errors import PersistenceError, ReviewSchedulerError, ReviewValidationError
from .models import (
    AccuracyCounts,
    ConfidenceLevel,
    DifficultyLevel,
    ReviewHistoryEntry,
    ReviewSettings,
    ReviewState,
    ReviewStats,
    Room,
    UserProfile,
    classify_room,
)
from .orchestrator import ReviewOrchestrator, create_orchestrator
from .profile import calculate_review_stats, cards_ready_for_review, derive_user_profile
from .scheduler import process_review, reschedule

__all__ = [
    "AccuracyCounts",
    "ConfidenceLevel",
    "DifficultyLevel",
    "PersistenceError",
    "ReviewHistoryEntry",
    "ReviewOrchestrator",
    "ReviewSchedulerError",
    "ReviewSettings",
    "ReviewState",
    "ReviewStats",
    "ReviewValidationError",
    "Room",
    "UserProfile",
    "calculate_review_stats",
    "cards_ready_for_review",
    "classify_room",
    "create_orchestrator",
    "derive_user_profile",
    "process_review",
    "reschedule",
]
