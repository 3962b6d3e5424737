from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from choreweek.recurrence import (
    CronExpression,
    RecurrenceRule,
    create_rule,
    get_occurrences,
    matches_cron,
    parse_field,
    preview_occurrences,
)


UTC = ZoneInfo("UTC")


def _dt(*args):
    return datetime(*args, tzinfo=UTC)


def test_parse_field_handles_lists_and_ranges():
    assert parse_field("1-5") == {1, 2, 3, 4, 5}
    assert parse_field("1,3,5-6") == {1, 3, 5, 6}
    assert parse_field("7") == {7}
    assert parse_field("*/2") == set()


def test_all_star_fields_match_every_day():
    day = date(2025, 1, 1)
    for offset in range(400):
        assert matches_cron(day + timedelta(days=offset), "0", "9", "*", "*", "*")


def test_month_and_day_of_month_fields():
    assert matches_cron(date(2025, 7, 4), "0", "9", "4", "7", "*")
    assert not matches_cron(date(2025, 8, 4), "0", "9", "4", "7", "*")
    assert not matches_cron(date(2025, 7, 5), "0", "9", "4", "7", "*")


def test_last_weekday_marker():
    # 2025-05-30 is the last of five Fridays in May
    assert matches_cron(date(2025, 5, 30), "0", "9", "*", "*", "5L")
    assert not matches_cron(date(2025, 5, 23), "0", "9", "*", "*", "5L")
    assert not matches_cron(date(2025, 5, 31), "0", "9", "*", "*", "5L")


def test_first_weekday_range():
    assert matches_cron(date(2025, 1, 6), "0", "9", "1-7", "*", "1")
    assert not matches_cron(date(2025, 1, 13), "0", "9", "1-7", "*", "1")
    assert not matches_cron(date(2025, 1, 7), "0", "9", "1-7", "*", "1")


def test_daily_rule_gives_one_occurrence_per_day():
    rule = create_rule("daily", "09:30", _dt(2025, 1, 6))
    assert rule.cron == "30 9 * * *"

    occurrences = get_occurrences(rule, _dt(2025, 1, 6, 15, 0), _dt(2025, 1, 12, 1, 0))

    assert len(occurrences) == 7
    assert [o.date() for o in occurrences] == [date(2025, 1, 6) + timedelta(days=i) for i in range(7)]
    assert all((o.hour, o.minute, o.second) == (9, 30, 0) for o in occurrences)
    assert all(o.tzinfo is not None for o in occurrences)


def test_weekly_rule_only_on_reference_weekday():
    rule = create_rule("weekly", "08:00", _dt(2025, 1, 1))  # a Wednesday

    occurrences = get_occurrences(rule, _dt(2025, 1, 1), _dt(2025, 1, 31))

    assert [o.day for o in occurrences] == [1, 8, 15, 22, 29]
    assert all(o.weekday() == 2 for o in occurrences)


def test_last_weekday_rule_picks_final_friday():
    rule = create_rule("last-weekday", "17:00", _dt(2025, 5, 2))  # a Friday
    assert rule.cron == "0 17 * * 5L"

    occurrences = get_occurrences(rule, _dt(2025, 5, 1), _dt(2025, 5, 31))

    assert occurrences == [_dt(2025, 5, 30, 17, 0)]


def test_first_weekday_rule_once_per_month():
    rule = create_rule("first-weekday", "10:00", _dt(2025, 1, 6))  # a Monday

    occurrences = get_occurrences(rule, _dt(2025, 1, 1), _dt(2025, 3, 31))

    assert [o.date() for o in occurrences] == [date(2025, 1, 6), date(2025, 2, 3), date(2025, 3, 3)]


def test_monthly_rule_skips_short_months():
    rule = create_rule("monthly", "09:00", _dt(2025, 1, 31))

    occurrences = get_occurrences(rule, _dt(2025, 1, 1), _dt(2025, 4, 30))

    assert [o.date() for o in occurrences] == [date(2025, 1, 31), date(2025, 3, 31)]


def test_weekdays_rule():
    rule = create_rule("weekdays", "09:00", _dt(2025, 1, 6))

    occurrences = get_occurrences(rule, _dt(2025, 1, 6), _dt(2025, 1, 12))

    assert [o.day for o in occurrences] == [6, 7, 8, 9, 10]


def test_biweekly_counts_from_first_match_in_window():
    rule = create_rule("biweekly", "09:00", _dt(2025, 1, 6))  # a Monday

    occurrences = get_occurrences(rule, _dt(2025, 1, 6), _dt(2025, 2, 16))

    assert [o.date() for o in occurrences] == [date(2025, 1, 6), date(2025, 1, 20), date(2025, 2, 3)]


def test_biweekly_parity_follows_window_start():
    rule = create_rule("biweekly", "09:00", _dt(2025, 1, 6))

    occurrences = get_occurrences(rule, _dt(2025, 1, 13), _dt(2025, 2, 9))

    assert [o.date() for o in occurrences] == [date(2025, 1, 13), date(2025, 1, 27)]


def test_custom_rule_with_month_list():
    rule = create_rule("custom", "09:00", _dt(2025, 1, 1), "0 6 1 1,7 *")

    occurrences = get_occurrences(rule, _dt(2025, 1, 1), _dt(2025, 12, 31))

    assert occurrences == [_dt(2025, 1, 1, 6, 0), _dt(2025, 7, 1, 6, 0)]


@pytest.mark.parametrize("cron", ["0 9 * *", "", None, "0 9 * * * *", "0 99 * * *"])
def test_malformed_cron_gives_no_occurrences(cron):
    rule = RecurrenceRule(cron=cron, preset="custom")
    assert get_occurrences(rule, _dt(2025, 1, 1), _dt(2025, 1, 31)) == []


def test_missing_rule_gives_no_occurrences():
    assert get_occurrences(None, _dt(2025, 1, 1), _dt(2025, 1, 31)) == []


def test_schedule_variants_agree_with_cron_predicate():
    crons = ["0 9 * * 3", "0 9 * * 1-5", "0 9 12 * *", "0 9 1-7 * 4", "0 9 * * 0L"]
    start = date(2024, 1, 1)
    for cron in crons:
        expr = CronExpression.parse(cron)
        schedule = expr.schedule()
        for offset in range(366):
            day = start + timedelta(days=offset)
            assert schedule.matches(day) == matches_cron(
                day, expr.minute, expr.hour, expr.day_of_month, expr.month, expr.day_of_week
            ), (cron, day)


def test_preview_returns_first_occurrences():
    rule = create_rule("weekly", "09:00", _dt(2025, 1, 1))

    preview = preview_occurrences(rule, now=_dt(2025, 1, 2, 12, 0))

    assert len(preview) == 5
    assert preview[0] == _dt(2025, 1, 8, 9, 0)
    assert preview == sorted(preview)


def test_preview_is_limited_to_three_months():
    rule = create_rule("custom", "09:00", _dt(2025, 1, 1), "0 9 1 6 *")

    assert preview_occurrences(rule, now=_dt(2025, 1, 2)) == []
    assert preview_occurrences(rule, count=2, now=_dt(2025, 4, 2)) == [_dt(2025, 6, 1, 9, 0)]
