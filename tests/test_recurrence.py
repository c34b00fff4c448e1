from datetime import date

import pytest

from recurrence import (
    TemplateValidationError,
    add_months,
    compute_horizon,
    days_in_month,
    materialization_key,
    resolve_due_date,
)


def test_horizon_open_ended_is_capped_twelve_months_ahead():
    months = compute_horizon(date(2024, 1, 1), None, date(2024, 6, 15))
    assert months[0] == (2024, 1)
    assert months[-1] == (2025, 6)
    assert (2025, 7) not in months
    assert len(months) == 18
    assert months == sorted(set(months))


def test_horizon_stops_at_end_month():
    months = compute_horizon(date(2024, 1, 15), date(2024, 4, 2), date(2024, 6, 15))
    assert months == [(2024, 1), (2024, 2), (2024, 3), (2024, 4)]


def test_horizon_end_beyond_cap_uses_cap():
    months = compute_horizon(date(2024, 5, 1), date(2030, 1, 1), date(2024, 6, 15))
    assert months[-1] == (2025, 6)


def test_horizon_empty_when_start_after_upper_bound():
    assert compute_horizon(date(2025, 7, 1), None, date(2024, 6, 15)) == []


def test_horizon_includes_start_month_when_start_is_mid_month():
    months = compute_horizon(date(2024, 3, 28), None, date(2024, 3, 10), 0)
    assert months == [(2024, 3)]


def test_horizon_crosses_year_boundary():
    months = compute_horizon(date(2024, 11, 1), None, date(2024, 12, 5), 2)
    assert months == [(2024, 11), (2024, 12), (2025, 1), (2025, 2)]


def test_horizon_rolls_forward_with_today():
    early = compute_horizon(date(2024, 1, 1), None, date(2024, 6, 15))
    later = compute_horizon(date(2024, 1, 1), None, date(2024, 9, 1))
    assert later[-1] == (2025, 9)
    assert early == later[: len(early)]


def test_due_day_clamps_to_short_months():
    assert resolve_due_date(31, 2024, 4) == date(2024, 4, 30)
    assert resolve_due_date(31, 2023, 2) == date(2023, 2, 28)
    assert resolve_due_date(31, 2024, 2) == date(2024, 2, 29)
    assert resolve_due_date(29, 2100, 2) == date(2100, 2, 28)
    assert resolve_due_date(15, 2024, 2) == date(2024, 2, 15)


@pytest.mark.parametrize("day", [0, 32, -1])
def test_due_day_out_of_range_is_rejected(day):
    with pytest.raises(TemplateValidationError):
        resolve_due_date(day, 2024, 1)


def test_days_in_month_december():
    assert days_in_month(2024, 12) == 31


def test_materialization_key_uses_calendar_month():
    assert materialization_key(7, 2024, 3) == "7-2024-3"
    assert materialization_key(7, 2024, 12) == "7-2024-12"


def test_add_months_snaps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
