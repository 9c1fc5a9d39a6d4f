from .review import (
    AccuracyCounts,
    ConfidenceLevel,
    ReviewHistoryEntry,
    ReviewState,
    ReviewStats,
    UserProfile,
)
from .room import Room, classify_room
from .settings import (
    DifficultyLevel,
    ReviewSettings,
    get_difficulty_settings,
    get_exam_mode_settings,
    get_personalized_settings,
)

__all__ = [
    "AccuracyCounts",
    "ConfidenceLevel",
    "DifficultyLevel",
    "ReviewHistoryEntry",
    "ReviewSettings",
    "ReviewState",
    "ReviewStats",
    "Room",
    "UserProfile",
    "classify_room",
    "get_difficulty_settings",
    "get_exam_mode_settings",
    "get_personalized_settings",
]
