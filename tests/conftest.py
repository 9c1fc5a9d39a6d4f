"""Pytest configuration shared by the review scheduler tests."""

import os

import pytest

# 開発者の .env に依存しないよう、テスト中の既定値を固定する。
# 個々のテストは monkeypatch で上書きしてよい。
os.environ.setdefault("STRICT_MODE", "true")
os.environ.setdefault("LOG_LEVEL", "INFO")

from spaced_review.orchestrator import ReviewOrchestrator  # noqa: E402
from spaced_review.store.memory import (  # noqa: E402
    InMemoryAccuracyProvider,
    InMemoryReviewStore,
    InMemorySettingsStore,
)
from tests.review_fakes import NOW, FrozenClock  # noqa: E402


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def accuracy() -> InMemoryAccuracyProvider:
    return InMemoryAccuracyProvider()


@pytest.fixture
def review_store() -> InMemoryReviewStore:
    return InMemoryReviewStore()


@pytest.fixture
def settings_store(clock: FrozenClock) -> InMemorySettingsStore:
    return InMemorySettingsStore(now=clock)


@pytest.fixture
def orchestrator(
    review_store: InMemoryReviewStore,
    settings_store: InMemorySettingsStore,
    accuracy: InMemoryAccuracyProvider,
    clock: FrozenClock,
) -> ReviewOrchestrator:
    return ReviewOrchestrator(review_store, settings_store, accuracy, clock=clock)
