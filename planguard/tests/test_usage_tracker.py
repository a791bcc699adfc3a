"""Usage counters and frequency events against the test database."""
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from planguard.core.errors import NotFoundError
from planguard.features.usage import service as usage

NOW = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)


def test_get_usage_without_record_is_zero():
    assert usage.get_usage("user_alice", "quiz") == 0
    assert usage.get_usage_record("user_alice", "quiz") is None


def test_increment_creates_then_adds():
    assert usage.increment_usage("user_alice", "quiz", now=NOW) == 1
    assert usage.increment_usage("user_alice", "quiz", amount=2.5, now=NOW) == 3.5
    assert usage.get_usage("user_alice", "quiz", now=NOW) == 3.5


def test_new_record_resets_one_month_out_clamped():
    usage.increment_usage("user_alice", "quiz", now=NOW)
    record = usage.get_usage_record("user_alice", "quiz")
    # Jan 31 -> Feb 28 (2026 is not a leap year)
    assert record.reset_at == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)


def test_next_reset_date_rolls_over_year():
    start = datetime(2026, 12, 15, tzinfo=timezone.utc)
    assert usage.next_reset_date(start) == datetime(2027, 1, 15, tzinfo=timezone.utc)


def test_counter_past_its_reset_date_reads_zero():
    usage.increment_usage("user_alice", "quiz", amount=5, now=NOW)
    reset_at = usage.get_usage_record("user_alice", "quiz").reset_at

    assert usage.get_usage("user_alice", "quiz", now=reset_at - timedelta(seconds=1)) == 5
    assert usage.get_usage("user_alice", "quiz", now=reset_at) == 0
    # Reads never rewrite the row
    assert usage.get_usage_record("user_alice", "quiz").current_value == 5


def test_increment_after_reset_date_starts_a_new_period():
    usage.increment_usage("user_alice", "quiz", amount=5, now=NOW)
    later = datetime(2026, 3, 5, 9, 30, tzinfo=timezone.utc)

    assert usage.increment_usage("user_alice", "quiz", now=later) == 1
    assert usage.increment_usage("user_alice", "quiz", now=later) == 2
    record = usage.get_usage_record("user_alice", "quiz")
    assert record.reset_at == datetime(2026, 4, 5, 9, 30, tzinfo=timezone.utc)


def test_user_usage_reports_lapsed_counters_as_zero():
    usage.increment_usage("user_alice", "quiz", amount=4, now=NOW)
    usage.increment_usage("user_alice", "flashcard", amount=2, now=datetime(2026, 3, 1, tzinfo=timezone.utc))

    counters = usage.get_user_usage("user_alice", now=datetime(2026, 3, 2, tzinfo=timezone.utc))

    assert counters == {"quiz": 0.0, "flashcard": 2.0}


def test_concurrent_increments_are_not_lost():
    def bump(_):
        for _ in range(25):
            usage.increment_usage("user_alice", "quiz")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(8)))

    assert usage.get_usage("user_alice", "quiz") == 200


def test_counters_are_per_user_and_feature():
    usage.increment_usage("user_alice", "quiz")
    usage.increment_usage("user_bob", "quiz")
    usage.increment_usage("user_alice", "flashcard", amount=4)

    assert usage.get_user_usage("user_alice") == {"quiz": 1.0, "flashcard": 4.0}
    assert usage.get_user_usage("user_bob") == {"quiz": 1.0}


def test_decrement_existing_counter():
    usage.increment_usage("user_alice", "fileStorage", amount=10)
    assert usage.decrement_usage("user_alice", "fileStorage", 3) == 7


def test_decrement_missing_counter_raises():
    with pytest.raises(NotFoundError):
        usage.decrement_usage("user_alice", "fileStorage", 1)


def test_reset_usage_zeroes_and_reschedules():
    usage.increment_usage("user_alice", "quiz", amount=5, now=NOW)
    later = datetime(2026, 3, 10, tzinfo=timezone.utc)

    usage.reset_usage("user_alice", "quiz", now=later)

    record = usage.get_usage_record("user_alice", "quiz")
    assert record.current_value == 0
    assert record.reset_at == datetime(2026, 4, 10, tzinfo=timezone.utc)


def test_reset_usage_missing_counter_raises():
    with pytest.raises(NotFoundError):
        usage.reset_usage("user_alice", "quiz")


def test_reset_user_usage_all_or_selected_keys():
    for key in ("quiz", "flashcard", "fileUpload"):
        usage.increment_usage("user_alice", key, amount=2)

    assert usage.reset_user_usage("user_alice", feature_keys=["quiz"]) == 1
    assert usage.get_user_usage("user_alice") == {"quiz": 0.0, "flashcard": 2.0, "fileUpload": 2.0}

    assert usage.reset_user_usage("user_alice") == 3
    assert set(usage.get_user_usage("user_alice").values()) == {0.0}
    assert usage.reset_user_usage("user_alice", feature_keys=[]) == 0


def test_usage_in_window_counts_only_recent_events():
    for seconds_ago in (120, 50, 10):
        usage.record_usage_event("user_alice", "apiRateLimit", occurred_at=NOW - timedelta(seconds=seconds_ago))
    usage.record_usage_event("user_bob", "apiRateLimit", occurred_at=NOW)

    assert usage.get_usage_in_window("user_alice", "apiRateLimit", NOW - timedelta(seconds=60)) == 2
    assert usage.get_usage_in_window("user_alice", "apiRateLimit", NOW - timedelta(hours=1)) == 3
    assert usage.get_usage_in_window("user_carol", "apiRateLimit", NOW - timedelta(hours=1)) == 0
