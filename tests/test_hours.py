from datetime import datetime, timezone

from delivery_app.hours import is_branch_open

WEEKDAY_HOURS = {"mon": [["08:00", "21:00"]], "tue": [["08:00:00", "14:00:00"], ["17:00", "22:00"]]}

# 2024-05-06 is a Monday.
MONDAY = datetime(2024, 5, 6)


def test_inside_and_outside_hours():
    assert is_branch_open(False, WEEKDAY_HOURS, MONDAY.replace(hour=9))
    assert not is_branch_open(False, WEEKDAY_HOURS, MONDAY.replace(hour=21))
    assert not is_branch_open(False, WEEKDAY_HOURS, MONDAY.replace(hour=7, minute=59))


def test_split_shift():
    tuesday = datetime(2024, 5, 7)
    assert is_branch_open(False, WEEKDAY_HOURS, tuesday.replace(hour=13))
    assert not is_branch_open(False, WEEKDAY_HOURS, tuesday.replace(hour=15))
    assert is_branch_open(False, WEEKDAY_HOURS, tuesday.replace(hour=18))


def test_overnight_span_wraps_midnight():
    hours = {"mon": [["22:00", "02:00"]]}
    assert is_branch_open(False, hours, MONDAY.replace(hour=23))
    assert is_branch_open(False, hours, MONDAY.replace(hour=1))
    assert not is_branch_open(False, hours, MONDAY.replace(hour=3))


def test_aware_time_is_converted_to_store_zone():
    # 02:00 UTC is 09:00 in Bangkok
    assert is_branch_open(False, WEEKDAY_HOURS, datetime(2024, 5, 6, 2, 0, tzinfo=timezone.utc))
    # 15:00 UTC is 22:00 in Bangkok
    assert not is_branch_open(False, WEEKDAY_HOURS, datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc))


def test_force_closed_wins():
    assert not is_branch_open(True, None, MONDAY.replace(hour=9))


def test_missing_hours_count_as_open():
    assert is_branch_open(False, None, MONDAY)
    assert is_branch_open(False, {}, MONDAY)
    # Wednesday has no spans configured
    assert is_branch_open(False, WEEKDAY_HOURS, datetime(2024, 5, 8, 3, 0))


def test_malformed_spans_are_skipped():
    hours = {"mon": [["8am", "9pm"], "bad", ["10:00", "11:00"]]}
    assert is_branch_open(False, hours, MONDAY.replace(hour=10, minute=30))
    assert not is_branch_open(False, hours, MONDAY.replace(hour=12))
