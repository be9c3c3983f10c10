from __future__ import annotations

from datetime import datetime, timezone

import pytest

from franchisecore.core.errors import ConditionError
from franchisecore.services.authz.conditions import ConditionContext, GrantConditions
from franchisecore.tests.utils.franchise import NOW


def _at(hour: int, minute: int = 0) -> datetime:
    return NOW.replace(hour=hour, minute=minute)


def test_empty_conditions_always_match() -> None:
    conditions = GrantConditions.parse(None)

    assert conditions.is_empty
    assert conditions.matches(ConditionContext(now=NOW))
    assert GrantConditions.parse({}).is_empty


def test_hour_windows_including_overnight_and_bare_hours() -> None:
    office = GrantConditions.parse({"time_restrictions": {"allowed_hours": ["09:00-17:00"]}})
    assert office.matches_time(_at(12))
    assert not office.matches_time(_at(18))

    night = GrantConditions.parse({"time_restrictions": {"allowed_hours": ["22:00-06:00"]}})
    assert night.matches_time(_at(23))
    assert night.matches_time(_at(5, 30))
    assert not night.matches_time(_at(12))

    lunch = GrantConditions.parse({"time_restrictions": {"allowed_hours": [12]}})
    assert lunch.matches_time(_at(12, 45))
    assert not lunch.matches_time(_at(13))


def test_allowed_days_accept_aliases() -> None:
    # NOW is a Wednesday.
    assert GrantConditions.parse({"time_restrictions": {"allowed_days": ["wed"]}}).matches_time(NOW)
    assert GrantConditions.parse(
        {"time_restrictions": {"allowed_days": ["Wednesday", "friday"]}}
    ).matches_time(NOW)
    assert not GrantConditions.parse(
        {"time_restrictions": {"allowed_days": ["monday"]}}
    ).matches_time(NOW)


def test_time_restrictions_use_the_grant_timezone() -> None:
    conditions = GrantConditions.parse(
        {"time_restrictions": {"allowed_hours": ["09:00-17:00"], "timezone": "America/New_York"}}
    )

    # Noon UTC is 07:00 in New York during standard time.
    assert not conditions.matches_time(NOW)
    assert conditions.matches_time(datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc))


def test_location_restrictions_need_a_location_context() -> None:
    conditions = GrantConditions.parse({"location_restrictions": ["R1"]})

    assert conditions.matches(ConditionContext(now=NOW, location_path_ids=("F", "R1", "L1")))
    assert not conditions.matches(ConditionContext(now=NOW, location_path_ids=("F", "R2", "L3")))
    assert not conditions.matches(ConditionContext(now=NOW))


def test_filter_fields_applies_allow_then_deny() -> None:
    conditions = GrantConditions.parse(
        {
            "data_restrictions": {
                "fields_allowed": ["revenue", "manager_phone", "opened"],
                "fields_denied": ["manager_phone"],
            }
        }
    )
    payload = {"revenue": 10, "manager_phone": "555", "opened": "2020", "ssn": "x"}

    assert conditions.filter_fields(payload) == {"revenue": 10, "opened": "2020"}
    assert GrantConditions().filter_fields(payload) == payload


@pytest.mark.parametrize(
    "raw",
    [
        {"unknown": True},
        {"time_restrictions": {"allowed_hours": ["25:00-26:00"]}},
        {"time_restrictions": {"allowed_days": ["someday"]}},
        {"time_restrictions": {"timezone": "Mars/Olympus"}},
        {"time_restrictions": {"allowed_hours": "09:00-17:00"}},
        {"location_restrictions": "R1"},
        {"data_restrictions": ["revenue"]},
        ["not", "an", "object"],
    ],
)
def test_malformed_conditions_are_rejected(raw) -> None:
    with pytest.raises(ConditionError):
        GrantConditions.parse(raw)
