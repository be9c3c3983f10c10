from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from franchisecore.core.errors import ConditionError


_DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_DAY_ALIASES = {name[:3]: name for name in _DAY_NAMES}
_KNOWN_KEYS = {"time_restrictions", "location_restrictions", "data_restrictions"}


@dataclass(frozen=True)
class HourWindow:
    start: time
    end: time

    def contains(self, value: time) -> bool:
        if self.start <= self.end:
            return self.start <= value <= self.end
        # Overnight window support (e.g., 22:00-06:00).
        return value >= self.start or value <= self.end


@dataclass(frozen=True)
class ConditionContext:
    # Evaluation inputs captured once per resolution.
    now: datetime
    # Path ids of the location being accessed, root first; None when no location applies.
    location_path_ids: tuple[str, ...] | None = None


@dataclass(frozen=True)
class GrantConditions:
    hour_windows: tuple[HourWindow, ...] = ()
    allowed_days: frozenset[str] = frozenset()
    timezone: str = "UTC"
    location_restrictions: frozenset[str] = frozenset()
    fields_allowed: tuple[str, ...] = ()
    fields_denied: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return self == GrantConditions()

    @classmethod
    def parse(cls, raw: dict[str, Any] | None) -> "GrantConditions":
        """Validate a stored conditions payload.

        Shape::

            {
              "time_restrictions": {"allowed_hours": ["09:00-17:00", "20"],
                                    "allowed_days": ["monday", "tue"],
                                    "timezone": "Europe/Berlin"},
              "location_restrictions": ["region-1"],
              "data_restrictions": {"fields_allowed": [...], "fields_denied": [...]}
            }
        """
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ConditionError("Conditions must be an object")
        unknown = set(raw) - _KNOWN_KEYS
        if unknown:
            raise ConditionError(f"Unsupported condition keys: {sorted(unknown)}")

        time_raw = raw.get("time_restrictions") or {}
        if not isinstance(time_raw, dict):
            raise ConditionError("time_restrictions must be an object")
        windows = tuple(_parse_window(item) for item in _string_list(time_raw, "allowed_hours"))
        days = frozenset(_parse_day(item) for item in _string_list(time_raw, "allowed_days"))
        tz_name = time_raw.get("timezone") or "UTC"
        try:
            ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConditionError(f"Unknown timezone: {tz_name}") from exc

        locations_raw = raw.get("location_restrictions") or []
        if not isinstance(locations_raw, list) or not all(isinstance(i, str) for i in locations_raw):
            raise ConditionError("location_restrictions must be a list of node ids")

        data_raw = raw.get("data_restrictions") or {}
        if not isinstance(data_raw, dict):
            raise ConditionError("data_restrictions must be an object")

        return cls(
            hour_windows=windows,
            allowed_days=days,
            timezone=str(tz_name),
            location_restrictions=frozenset(locations_raw),
            fields_allowed=tuple(_string_list(data_raw, "fields_allowed")),
            fields_denied=frozenset(_string_list(data_raw, "fields_denied")),
        )

    def matches(self, context: ConditionContext) -> bool:
        return self.matches_time(context.now) and self.matches_location(context.location_path_ids)

    def matches_time(self, now: datetime) -> bool:
        local_now = now.astimezone(ZoneInfo(self.timezone))
        if self.allowed_days and _DAY_NAMES[local_now.weekday()] not in self.allowed_days:
            return False
        if self.hour_windows:
            moment = local_now.time().replace(tzinfo=None)
            if not any(window.contains(moment) for window in self.hour_windows):
                return False
        return True

    def matches_location(self, location_path_ids: tuple[str, ...] | None) -> bool:
        if not self.location_restrictions:
            return True
        # Restricted grants never match when no location is in play.
        if location_path_ids is None:
            return False
        return bool(self.location_restrictions.intersection(location_path_ids))

    def filter_fields(self, payload: dict[str, Any]) -> dict[str, Any]:
        # Deny wins over allow when a field appears in both lists.
        if self.fields_allowed:
            allowed = set(self.fields_allowed)
            payload = {key: value for key, value in payload.items() if key in allowed}
        return {key: value for key, value in payload.items() if key not in self.fields_denied}


def _string_list(container: dict[str, Any], key: str) -> list[str]:
    value = container.get(key) or []
    if not isinstance(value, list):
        raise ConditionError(f"{key} must be a list")
    items: list[str] = []
    for item in value:
        if isinstance(item, int) and not isinstance(item, bool):
            item = str(item)
        if not isinstance(item, str) or not item.strip():
            raise ConditionError(f"{key} entries must be non-empty strings")
        items.append(item.strip())
    return items


def _parse_clock(raw: str) -> time:
    for fmt in ("%H:%M:%S", "%H:%M", "%H"):
        try:
            return datetime.strptime(raw, fmt).time()
        except ValueError:
            continue
    raise ConditionError(f"Invalid time of day: {raw!r}")


def _parse_window(raw: str) -> HourWindow:
    if "-" in raw:
        start_raw, end_raw = (part.strip() for part in raw.split("-", 1))
        return HourWindow(start=_parse_clock(start_raw), end=_parse_clock(end_raw))
    # A bare hour covers that whole hour.
    start = _parse_clock(raw)
    return HourWindow(start=start, end=start.replace(minute=59, second=59))


def _parse_day(raw: str) -> str:
    name = raw.lower()
    if name in _DAY_NAMES:
        return name
    if name in _DAY_ALIASES:
        return _DAY_ALIASES[name]
    raise ConditionError(f"Invalid day name: {raw!r}")

