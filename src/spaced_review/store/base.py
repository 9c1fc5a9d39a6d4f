from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable

from pydantic import ValidationError

from ..errors import ReviewValidationError
from ..models.review import AccuracyCounts, ReviewState
from ..models.settings import ReviewSettings


@runtime_checkable
class AccuracyProvider(Protocol):
    """Question/attempt aggregator; must include the attempt just recorded."""

    def get_accuracy(self, topic_id: str) -> AccuracyCounts: ...


@runtime_checkable
class ReviewStateStore(Protocol):
    """Per-topic review state persistence."""

    def get(self, topic_id: str) -> ReviewState | None: ...

    def put(self, state: ReviewState) -> None: ...

    def list_due(self, now: datetime) -> list[ReviewState]: ...

    def list_all(self) -> list[ReviewState]: ...


@runtime_checkable
class SettingsStore(Protocol):
    """Holder of the single ReviewSettings record."""

    def get(self) -> ReviewSettings: ...

    def put(self, settings: ReviewSettings) -> ReviewSettings: ...

    def update(self, **changes: Any) -> ReviewSettings: ...

    def reset(self) -> ReviewSettings: ...


# version / timestamps are owned by the store
_MANAGED_SETTINGS_FIELDS = frozenset({"version", "created_at", "updated_at"})


def apply_settings_changes(
    current: ReviewSettings,
    changes: Mapping[str, Any],
    now: datetime,
) -> ReviewSettings:
    """Merge user changes into ``current`` and bump the version.

    未知のキーや管理対象フィールド（version など）の変更、検証に通らない値は
    ReviewValidationError として拒否する。
    """

    unknown = set(changes) - set(ReviewSettings.model_fields)
    if unknown:
        raise ReviewValidationError(f"unknown review settings: {', '.join(sorted(unknown))}")
    managed = set(changes) & _MANAGED_SETTINGS_FIELDS
    if managed:
        raise ReviewValidationError(f"read-only review settings: {', '.join(sorted(managed))}")

    data = {**current.model_dump(), **changes, "version": current.version + 1, "updated_at": now}
    try:
        return ReviewSettings.model_validate(data)
    except ValidationError as exc:
        raise ReviewValidationError(str(exc)) from exc


def default_settings_after(current: ReviewSettings | None, now: datetime) -> ReviewSettings:
    """Fresh defaults whose version continues from ``current``."""

    version = current.version + 1 if current is not None else 1
    return ReviewSettings(version=version, created_at=now, updated_at=now)
