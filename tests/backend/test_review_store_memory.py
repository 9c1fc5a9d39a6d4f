from datetime import timedelta

from spaced_review.models.review import ReviewState
from spaced_review.store.base import ReviewStateStore, SettingsStore
from spaced_review.store.memory import InMemoryReviewStore, InMemorySettingsStore
from tests.review_fakes import NOW, TODAY


def test_in_memory_stores_satisfy_protocols():
    assert isinstance(InMemoryReviewStore(), ReviewStateStore)
    assert isinstance(InMemorySettingsStore(), SettingsStore)


def test_unknown_topic_reads_as_none():
    assert InMemoryReviewStore().get("missing") is None


def test_put_and_get_are_isolated_copies():
    store = InMemoryReviewStore()
    state = ReviewState(topic_id="t1", total_reviews=1)
    store.put(state)

    state.total_reviews = 99
    loaded = store.get("t1")
    assert loaded is not None
    assert loaded.total_reviews == 1

    loaded.total_reviews = 50
    assert store.get("t1").total_reviews == 1


def test_list_due_returns_blocked_topics_up_to_cutoff():
    store = InMemoryReviewStore()
    store.put(ReviewState(topic_id="due", is_blocked=True, next_review_date=TODAY))
    store.put(ReviewState(topic_id="later", is_blocked=True, next_review_date=TODAY + timedelta(days=1)))
    store.put(ReviewState(topic_id="open", is_blocked=False, next_review_date=TODAY - timedelta(days=3)))

    assert [s.topic_id for s in store.list_due(TODAY)] == ["due"]
    assert {s.topic_id for s in store.list_all()} == {"due", "later", "open"}


def test_settings_update_bumps_version(clock):
    store = InMemorySettingsStore(now=clock)

    updated = store.update(max_interval=120, exam_mode_enabled=True)

    assert updated.version == 2
    assert updated.max_interval == 120
    assert updated.updated_at == NOW
    assert store.get().exam_mode_enabled is True


def test_settings_reset_restores_defaults_with_new_version(clock):
    store = InMemorySettingsStore(now=clock)
    store.update(max_interval=120)

    fresh = store.reset()

    assert fresh.max_interval == 365
    assert fresh.version == 3
    assert store.get() == fresh
