import threading
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from spaced_review.config import Settings
from spaced_review.errors import PersistenceError, ReviewValidationError
from spaced_review.models.review import ReviewState, UserProfile
from spaced_review.models.room import Room
from spaced_review.orchestrator import ReviewOrchestrator, create_orchestrator
from spaced_review.store.memory import InMemorySettingsStore
from tests.review_fakes import NOW, TODAY, CountingReviewStore, FailingReviewStore


def test_first_completion_creates_blocked_state(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 9)

    room = orchestrator.complete_review("t1")

    assert room is Room.verde
    state = orchestrator.get_review_state("t1")
    assert state.cycle_index == 1
    assert state.is_blocked is True
    assert state.total_reviews == 1
    assert state.next_review_date == TODAY + timedelta(days=7)
    assert state.last_review_date == TODAY


def test_unattempted_topic_is_triaged(orchestrator):
    assert orchestrator.classify_room("t1") is Room.triagem
    assert orchestrator.complete_review("t1") is Room.triagem
    assert orchestrator.get_review_state("t1").next_review_date == TODAY + timedelta(days=1)


def test_get_or_create_does_not_persist(orchestrator):
    fresh = orchestrator.get_or_create("new")

    assert fresh.cycle_index == 0
    assert fresh.ease_factor == 2.5
    assert orchestrator.get_review_state("new") is None


def test_quality_is_capped_by_measured_accuracy(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 5)

    room = orchestrator.complete_review("t1", quality=5, response_time=20, confidence_level="chute")

    assert room is Room.vermelha
    state = orchestrator.get_review_state("t1")
    assert state.history[-1].quality == 2
    assert state.failure_count == 1


def test_every_completion_counts_once_and_blocks(orchestrator, accuracy, clock):
    accuracy.set_counts("t1", 4, 4)
    for expected_total, quality in enumerate([None, 4, None, 5, 2, None, 3], start=1):
        orchestrator.complete_review("t1", quality=quality)
        state = orchestrator.get_review_state("t1")
        assert state.total_reviews == expected_total
        assert state.is_blocked is True
        assert state.next_review_date >= state.last_review_date
        clock.advance(days=1)

    assert orchestrator.get_review_state("t1").cycle_index == 5


def test_exam_date_is_kept_for_later_reviews(orchestrator, accuracy, clock):
    accuracy.set_counts("t1", 10, 10)
    exam = TODAY + timedelta(days=2)

    orchestrator.complete_review("t1", exam_date=exam)
    state = orchestrator.get_review_state("t1")
    assert state.next_review_date == exam
    assert state.exam_date == exam

    # 試験日を過ぎた後の復習は当日扱い
    clock.advance(days=3)
    orchestrator.complete_review("t1")
    state = orchestrator.get_review_state("t1")
    assert state.next_review_date == TODAY + timedelta(days=3)
    assert state.exam_date == exam


@pytest.mark.parametrize(
    "kwargs",
    [{"quality": 7}, {"quality": 3, "response_time": -1}, {"confidence_level": "sure"}],
)
def test_invalid_input_leaves_store_untouched(orchestrator, kwargs):
    with pytest.raises(ReviewValidationError):
        orchestrator.complete_review("t1", **kwargs)

    assert orchestrator.get_review_state("t1") is None


def test_incoherent_accuracy_counts_are_rejected(orchestrator, accuracy):
    accuracy.set_counts("t1", 2, 5)

    with pytest.raises(ReviewValidationError):
        orchestrator.complete_review("t1")

    assert orchestrator.get_review_state("t1") is None


def test_empty_topic_id_is_rejected(orchestrator):
    with pytest.raises(ReviewValidationError):
        orchestrator.complete_review("")


def test_failed_save_keeps_previous_state_and_can_be_retried(settings_store, accuracy, clock):
    store = FailingReviewStore()
    orch = ReviewOrchestrator(store, settings_store, accuracy, clock=clock)
    accuracy.set_counts("t1", 10, 9)
    orch.complete_review("t1", quality=4)
    before = orch.get_review_state("t1")

    store.fail_puts = True
    with pytest.raises(PersistenceError):
        orch.complete_review("t1", quality=4)
    assert orch.get_review_state("t1") == before

    store.fail_puts = False
    orch.complete_review("t1", quality=4)
    after = orch.get_review_state("t1")
    assert after.total_reviews == 2
    assert after.cycle_index == 2
    assert len(after.history) == 2


def test_unlock_releases_due_topics_once(orchestrator, accuracy, clock):
    accuracy.set_counts("t1", 10, 10)
    accuracy.set_counts("t2", 10, 8)
    orchestrator.complete_review("t1")  # +7 日
    orchestrator.complete_review("t2")  # +3 日

    assert orchestrator.unlock_due_reviews() == []

    clock.advance(days=3)
    assert orchestrator.unlock_due_reviews() == ["t2"]
    assert orchestrator.get_review_state("t2").is_blocked is False
    assert orchestrator.get_review_state("t1").is_blocked is True

    assert orchestrator.unlock_due_reviews() == []


def test_unlock_uses_the_start_of_the_day(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 10)
    orchestrator.complete_review("t1", quality=5)  # 1.3 日後の 07:12

    late_next_day = TODAY + timedelta(days=1, hours=23)
    assert orchestrator.unlock_due_reviews(late_next_day) == []
    assert orchestrator.unlock_due_reviews(TODAY + timedelta(days=2)) == ["t1"]


def test_unlock_skips_topics_reblocked_by_a_completion(orchestrator, review_store, accuracy, clock, monkeypatch):
    accuracy.set_counts("t1", 10, 10)
    orchestrator.complete_review("t1")
    clock.advance(days=7)
    stale = review_store.list_due(clock())

    orchestrator.complete_review("t1")
    monkeypatch.setattr(review_store, "list_due", lambda _now: stale)

    assert orchestrator.unlock_due_reviews() == []
    assert orchestrator.get_review_state("t1").is_blocked is True


def test_recalc_moves_dates_only(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 10)
    accuracy.set_counts("t2", 10, 8)
    orchestrator.complete_review("t1", quality=4)
    orchestrator.complete_review("t2")
    before = {t: orchestrator.get_review_state(t) for t in ("t1", "t2")}

    exam = TODAY + timedelta(days=2)
    assert sorted(orchestrator.recalc_all_on_exam_change(exam)) == ["t1", "t2"]

    for topic_id, old in before.items():
        new = orchestrator.get_review_state(topic_id)
        assert new.next_review_date == exam
        assert new.exam_date == exam
        assert new.total_reviews == old.total_reviews
        assert new.cycle_index == old.cycle_index
        assert new.ease_factor == old.ease_factor
        assert new.is_blocked == old.is_blocked
        assert new.history == old.history

    orchestrator.recalc_all_on_exam_change(None)
    cleared = orchestrator.get_review_state("t1")
    assert cleared.exam_date is None
    assert cleared.next_review_date == TODAY + timedelta(days=3)


def test_injected_profile_drives_personalized_intervals(review_store, settings_store, accuracy, clock):
    profile = UserProfile(average_retention_rate=0.95, average_response_time=60, total_review_sessions=20)
    orch = ReviewOrchestrator(review_store, settings_store, accuracy, clock=clock, profile_provider=lambda: profile)
    review_store.put(ReviewState(topic_id="t1", cycle_index=3, total_reviews=3, average_quality=4))
    accuracy.set_counts("t1", 10, 10)

    orch.complete_review("t1", quality=4)

    assert orch.get_review_state("t1").interval_days == pytest.approx(9.0)
    assert orch.user_profile() is profile


def test_fast_profile_never_stores_ease_above_configured_maximum(review_store, settings_store, accuracy, clock):
    fast = UserProfile(average_response_time=10, total_review_sessions=50)
    orch = ReviewOrchestrator(review_store, settings_store, accuracy, clock=clock, profile_provider=lambda: fast)
    accuracy.set_counts("t1", 10, 10)
    bounds = settings_store.get()

    for _ in range(5):
        orch.complete_review("t1", quality=5)
        clock.advance(days=1)

    ease = orch.get_review_state("t1").ease_factor
    assert bounds.min_ease_factor <= ease <= bounds.max_ease_factor
    assert ease == pytest.approx(2.5)


def test_derived_profile_is_reused_within_the_cache_window(settings_store, accuracy, clock):
    store = CountingReviewStore()
    orch = ReviewOrchestrator(store, settings_store, accuracy, clock=clock, profile_cache_seconds=60)
    accuracy.set_counts("t1", 10, 10)

    for _ in range(5):
        orch.complete_review("t1", quality=4)
    assert store.list_all_calls == 1

    clock.advance(seconds=61)
    orch.complete_review("t1", quality=4)
    assert store.list_all_calls == 2

    orch.user_profile(refresh=True)
    assert store.list_all_calls == 3


def test_zero_cache_window_derives_the_profile_every_time(review_store, settings_store, accuracy, clock):
    orch = ReviewOrchestrator(review_store, settings_store, accuracy, clock=clock, profile_cache_seconds=0)
    assert orch.user_profile().total_review_sessions == 0

    review_store.put(ReviewState(topic_id="a", total_reviews=12, average_quality=4.0))

    assert orch.user_profile().total_review_sessions == 12


def test_derived_profile_reflects_stored_states(orchestrator, review_store):
    review_store.put(ReviewState(topic_id="a", total_reviews=10, average_quality=5.0, streak_count=10))

    profile = orchestrator.user_profile()

    assert profile.average_retention_rate == 1.0
    assert profile.total_review_sessions == 10


def test_ready_queue_defaults_to_daily_limit(orchestrator, review_store, settings_store):
    for topic_id in ("a", "b", "c"):
        review_store.put(ReviewState(topic_id=topic_id, is_blocked=True, next_review_date=TODAY))
    settings_store.update(daily_review_limit=2)

    assert len(orchestrator.ready_for_review()) == 2
    assert len(orchestrator.ready_for_review(max_cards=10)) == 3
    assert orchestrator.review_stats().ready_for_review == 3


def test_difficulty_settings(orchestrator):
    assert orchestrator.difficulty_settings("easy").initial_interval == 2

    with pytest.raises(ReviewValidationError):
        orchestrator.difficulty_settings("brutal")


def test_completion_is_logged(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 10)

    with capture_logs() as logs:
        orchestrator.complete_review("t1", quality=4)

    [event] = [e for e in logs if e["event"] == "review_completed"]
    assert event["room"] == "verde"
    assert event["mode"] == "intelligent"
    assert event["total_reviews"] == 1


def test_parallel_completions_of_one_topic_are_serialized(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 10)
    threads = [threading.Thread(target=orchestrator.complete_review, args=("t1",)) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    state = orchestrator.get_review_state("t1")
    assert state.total_reviews == 20
    assert state.cycle_index == 5


def test_sqlite_backed_orchestrator_persists_reviews(tmp_path, accuracy, clock):
    app_settings = Settings(review_db_path=str(tmp_path / "reviews.sqlite3"), write_behind_delay_ms=0)
    accuracy.set_counts("t1", 10, 10)

    create_orchestrator(accuracy, app_settings, clock=clock).complete_review("t1", quality=4)

    reopened = create_orchestrator(accuracy, app_settings, clock=clock)
    state = reopened.get_review_state("t1")
    assert state.total_reviews == 1
    assert len(state.history) == 1
    assert state.history[0].date == NOW


def test_in_memory_settings_are_used_per_orchestrator(review_store, accuracy, clock):
    settings_store = InMemorySettingsStore(now=clock)
    settings_store.update(lapse_multiplier=0.25, min_interval=0.1)
    orch = ReviewOrchestrator(review_store, settings_store, accuracy, clock=clock)
    review_store.put(ReviewState(topic_id="t1", cycle_index=2, ease_factor=2.0))

    orch.complete_review("t1", quality=0)

    # 2 × ease(1.3 に下限補正) × 0.25
    assert orch.get_review_state("t1").interval_days == pytest.approx(2 * 1.3 * 0.25)


def test_default_wiring_can_flush_deferred_reviews(tmp_path, accuracy, clock):
    # デバウンスが切れる前に flush しても保存されること
    app_settings = Settings(review_db_path=str(tmp_path / "reviews.sqlite3"), write_behind_delay_ms=60_000)
    accuracy.set_counts("t1", 10, 10)
    orch = create_orchestrator(accuracy, app_settings, clock=clock)

    orch.complete_review("t1", quality=4)
    assert create_orchestrator(accuracy, app_settings, clock=clock).get_review_state("t1") is None

    assert orch.flush() == 1
    reopened = create_orchestrator(accuracy, app_settings, clock=clock)
    assert reopened.get_review_state("t1").total_reviews == 1
    assert orch.flush() == 0


def test_close_writes_pending_reviews(tmp_path, accuracy, clock):
    app_settings = Settings(review_db_path=str(tmp_path / "reviews.sqlite3"), write_behind_delay_ms=60_000)
    accuracy.set_counts("t1", 10, 10)
    orch = create_orchestrator(accuracy, app_settings, clock=clock)
    orch.complete_review("t1", quality=4)

    orch.close()

    assert create_orchestrator(accuracy, app_settings, clock=clock).get_review_state("t1") is not None


def test_pending_reviews_are_flushed_at_exit(tmp_path, accuracy, clock, monkeypatch):
    registered = []
    monkeypatch.setattr("spaced_review.store.atexit.register", lambda fn, *args: registered.append((fn, args)))
    app_settings = Settings(review_db_path=str(tmp_path / "reviews.sqlite3"), write_behind_delay_ms=60_000)
    accuracy.set_counts("t1", 10, 10)
    create_orchestrator(accuracy, app_settings, clock=clock).complete_review("t1", quality=4)

    [(on_exit, args)] = registered
    on_exit(*args)

    assert create_orchestrator(accuracy, app_settings, clock=clock).get_review_state("t1").total_reviews == 1


def test_flush_is_a_no_op_for_synchronous_stores(orchestrator, accuracy):
    accuracy.set_counts("t1", 10, 10)
    orchestrator.complete_review("t1", quality=4)

    assert orchestrator.flush() == 0
    orchestrator.close()
    assert orchestrator.get_review_state("t1").total_reviews == 1
