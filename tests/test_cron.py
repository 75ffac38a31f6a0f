"""Tests for cron parsing and next-occurrence calculation."""

from datetime import datetime, timedelta, timezone

import pytest

from cronctl.cron import iter_occurrences, next_occurrence, parse_cron
from cronctl.errors import CronSyntaxError, JobValidationError
from cronctl.models import Schedule


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def cron(expr, tz="UTC"):
    return Schedule(cron=expr, timezone=tz)


class TestParseCron:
    def test_normalizes_case_and_whitespace(self):
        assert parse_cron("  0 0 * JAN-mar MON-fri ") == "0 0 * jan-mar mon-fri"

    def test_macros_expand_to_five_fields(self):
        assert parse_cron("@hourly") == "0 * * * *"
        assert parse_cron("@daily") == "0 0 * * *"
        assert parse_cron("@Weekly") == "0 0 * * 0"

    def test_lists_ranges_and_steps(self):
        schedule = cron("0,15 9-17/2 * * *")
        got = list(iter_occurrences(schedule, utc(2025, 1, 6, 9, 0), limit=4))
        assert got == [utc(2025, 1, 6, 9, 15), utc(2025, 1, 6, 11, 0),
                       utc(2025, 1, 6, 11, 15), utc(2025, 1, 6, 13, 0)]

    def test_names_are_case_insensitive(self):
        # Jan 6 2025 is a Monday
        schedule = cron("0 0 * jan-Mar SAT,sun")
        assert next_occurrence(schedule, utc(2025, 1, 6)) == utc(2025, 1, 11)
        assert next_occurrence(schedule, utc(2025, 3, 31)) == utc(2026, 1, 3)

    def test_seven_is_sunday(self):
        assert next_occurrence(cron("0 0 * * 7"), utc(2025, 1, 6)) == utc(2025, 1, 12)

    @pytest.mark.parametrize("bad", [
        "",
        "   ",
        "* * * *",
        "* * * * * *",
        "60 * * * *",
        "* 24 * * *",
        "* * 0 * *",
        "* * * 13 *",
        "* * * * 8",
        "a * * * *",
        "@fortnightly",
    ])
    def test_rejects_malformed(self, bad):
        with pytest.raises(CronSyntaxError):
            parse_cron(bad)

    def test_syntax_error_is_a_validation_error(self):
        with pytest.raises(JobValidationError):
            parse_cron("nope")


class TestNextOccurrence:
    def test_every_five_minutes_from_noon(self):
        assert next_occurrence(cron("*/5 * * * *"), utc(2025, 1, 6, 12, 0, 0)) == utc(2025, 1, 6, 12, 5)

    def test_result_is_strictly_after(self):
        at = utc(2025, 1, 6, 12, 5)
        assert next_occurrence(cron("*/5 * * * *"), at) == utc(2025, 1, 6, 12, 10)

    def test_seconds_are_rounded_up_to_the_next_minute(self):
        assert next_occurrence(cron("* * * * *"), utc(2025, 1, 6, 12, 0, 30)) == utc(2025, 1, 6, 12, 1)

    @pytest.mark.parametrize("expr", [
        "*/5 * * * *", "0 * * * *", "30 2 * * 1-5", "0 0 1 * *", "15 10 * * sun",
        "0 0 29 2 *", "@daily", "0 9 1,15 * 5",
    ])
    def test_strictly_increasing(self, expr):
        schedule = cron(expr, "Europe/Stockholm")
        start = utc(2024, 1, 1, 0, 0)
        for offset_days in (0, 37, 180, 300):
            t = start + timedelta(days=offset_days, minutes=7)
            first = next_occurrence(schedule, t)
            second = next_occurrence(schedule, first)
            assert first > t
            assert second > first

    def test_dom_and_dow_are_or_combined_when_both_restricted(self):
        # 13th of the month OR any Friday; Jan 10 2025 is a Friday
        schedule = cron("0 0 13 * 5")
        assert next_occurrence(schedule, utc(2025, 1, 6)) == utc(2025, 1, 10)
        assert next_occurrence(schedule, utc(2025, 1, 10)) == utc(2025, 1, 13)

    def test_dom_and_dow_are_and_combined_when_one_is_star(self):
        assert next_occurrence(cron("0 0 * * 5"), utc(2025, 1, 6)) == utc(2025, 1, 10)
        assert next_occurrence(cron("0 0 13 * *"), utc(2025, 1, 6)) == utc(2025, 1, 13)

    def test_month_rollover(self):
        assert next_occurrence(cron("0 0 1 * *"), utc(2025, 1, 31, 23, 59)) == utc(2025, 2, 1)

    def test_leap_day(self):
        assert next_occurrence(cron("0 0 29 2 *"), utc(2025, 1, 1)) == utc(2028, 2, 29)

    def test_impossible_date_never_fires(self):
        # croniter may reject it up front or give up searching; neither yields a time
        try:
            nxt = next_occurrence(cron("0 0 30 2 *"), utc(2025, 1, 1))
        except CronSyntaxError:
            return
        assert nxt is None

    def test_evaluated_in_job_time_zone(self):
        # 09:00 in New York during standard time is 14:00 UTC
        schedule = cron("0 9 * * *", "America/New_York")
        assert next_occurrence(schedule, utc(2025, 1, 6, 12)) == utc(2025, 1, 6, 14)

    def test_skips_wall_times_inside_spring_forward_gap(self):
        # 2025-03-09 02:30 does not exist in New York
        schedule = cron("30 2 * * *", "America/New_York")
        after = utc(2025, 3, 9, 5, 0)  # midnight EST
        assert next_occurrence(schedule, after) == utc(2025, 3, 10, 6, 30)

    def test_ambiguous_wall_time_fires_once(self):
        # 2025-11-02 01:30 happens twice in New York; only the first counts
        schedule = cron("30 1 * * *", "America/New_York")
        first = next_occurrence(schedule, utc(2025, 11, 2, 4, 0))
        assert first == utc(2025, 11, 2, 5, 30)
        assert next_occurrence(schedule, first) == utc(2025, 11, 3, 6, 30)

    def test_naive_after_is_treated_as_utc(self):
        assert next_occurrence(cron("*/5 * * * *"), datetime(2025, 1, 6, 12, 0)) == utc(2025, 1, 6, 12, 5)

    def test_deterministic(self):
        schedule = cron("7 */3 * * *", "Asia/Tokyo")
        t = utc(2025, 6, 1, 8, 8)
        assert next_occurrence(schedule, t) == next_occurrence(schedule, t)

    def test_unknown_time_zone(self):
        with pytest.raises(JobValidationError):
            next_occurrence(cron("* * * * *", "Mars/Olympus_Mons"), utc(2025, 1, 1))


class TestOneShot:
    def test_future_run_at_is_returned(self):
        schedule = Schedule(run_at=utc(2025, 1, 6, 13))
        assert next_occurrence(schedule, utc(2025, 1, 6, 12)) == utc(2025, 1, 6, 13)

    def test_none_once_reached(self):
        schedule = Schedule(run_at=utc(2025, 1, 6, 13))
        assert next_occurrence(schedule, utc(2025, 1, 6, 13)) is None
        assert next_occurrence(schedule, utc(2025, 1, 6, 14)) is None

    def test_naive_run_at_uses_schedule_zone(self):
        schedule = Schedule(run_at=datetime(2025, 1, 6, 9, 0), timezone="America/New_York")
        assert next_occurrence(schedule, utc(2025, 1, 6, 0)) == utc(2025, 1, 6, 14)

    @pytest.mark.parametrize("schedule", [
        Schedule(),
        Schedule(cron="* * * * *", run_at=datetime(2025, 1, 1, tzinfo=timezone.utc)),
    ])
    def test_exactly_one_kind_required(self, schedule):
        with pytest.raises(JobValidationError):
            next_occurrence(schedule, utc(2025, 1, 1))


def test_iter_occurrences():
    got = list(iter_occurrences(cron("0 */6 * * *"), utc(2025, 1, 6, 1), limit=3))
    assert got == [utc(2025, 1, 6, 6), utc(2025, 1, 6, 12), utc(2025, 1, 6, 18)]


def test_iter_occurrences_stops_for_one_shot():
    schedule = Schedule(run_at=utc(2025, 1, 6, 13))
    assert list(iter_occurrences(schedule, utc(2025, 1, 6, 12), limit=5)) == [utc(2025, 1, 6, 13)]
