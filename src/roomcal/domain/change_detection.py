"""Change detection between a stored reservation and an incoming update.

Produces the field-level change list that ends up in "your reservation was
updated" emails and in 409 conflict responses.

Equality is type-aware so that representation noise never shows up as a
change:
- None, missing, blank strings and empty lists are all "empty"
- lists compare order-independently on their stringified elements
- numbers compare numerically ("50" == 50)
- local date-times compare with seconds normalised ("T10:00" == "T10:00:00")
- everything else falls back to string equality
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Mapping

# Fields whose change is reported to the requester.
NOTIFIABLE_FIELDS: tuple[str, ...] = (
    "event_title",
    "event_description",
    "start_date_time",
    "end_date_time",
    "location_display_names",
    "locations",
    "attendee_count",
    "categories",
    "setup_time",
    "teardown_time",
    "door_open_time",
    "door_close_time",
    "is_offsite",
    "offsite_name",
    "offsite_address",
    "services",
    "assigned_to",
)

# Fields included in a version-conflict diff.
CONFLICT_FIELDS: tuple[str, ...] = (
    "event_title",
    "event_description",
    "start_date_time",
    "end_date_time",
    "setup_time",
    "teardown_time",
    "door_open_time",
    "door_close_time",
    "location_display_names",
    "locations",
    "attendee_count",
    "categories",
    "special_requirements",
    "status",
)

FIELD_DISPLAY_NAMES: dict[str, str] = {
    "event_title": "Event Title",
    "event_description": "Description",
    "start_date_time": "Start Date/Time",
    "end_date_time": "End Date/Time",
    "location_display_names": "Location(s)",
    "locations": "Room(s)",
    "attendee_count": "Expected Attendees",
    "categories": "Categories",
    "setup_time": "Setup Time",
    "teardown_time": "Teardown Time",
    "door_open_time": "Door Open Time",
    "door_close_time": "Door Close Time",
    "is_offsite": "Offsite Event",
    "offsite_name": "Offsite Venue",
    "offsite_address": "Offsite Address",
    "services": "Services",
    "assigned_to": "Assigned To",
    "special_requirements": "Special Requirements",
    "status": "Status",
}

DATE_TIME_FIELDS = frozenset({"start_date_time", "end_date_time"})
TIME_ONLY_FIELDS = frozenset(
    {"start_time", "end_time", "setup_time", "teardown_time", "door_open_time", "door_close_time"}
)
BOOLEAN_FIELDS = frozenset({"is_offsite"})

NOT_SET = "(not set)"
NONE_LISTED = "(none)"

_DATE_TIME_NO_SECONDS = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}$")
_DATE_TIME_WITH_SECONDS = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}$")


@dataclass(frozen=True)
class Change:
    """One detected field difference."""

    field: str
    old_value: Any
    new_value: Any
    display_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "display_name": self.display_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }


def get_field_display_name(field: str) -> str:
    return FIELD_DISPLAY_NAMES.get(field, field)


def _normalize_empty(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return None
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _element_key(value: Any) -> str:
    if isinstance(value, Mapping):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _pad_seconds(value: str) -> str:
    return value + ":00" if _DATE_TIME_NO_SECONDS.match(value) else value


def _is_local_date_time(value: str) -> bool:
    return bool(_DATE_TIME_NO_SECONDS.match(value) or _DATE_TIME_WITH_SECONDS.match(value))


def values_are_different(old_value: Any, new_value: Any) -> bool:
    """Compare two field values under the change-detection equality rules.

    Args:
        old_value: Value stored before the update.
        new_value: Value sent by the caller.

    Returns:
        True if the values differ in a way worth reporting.
    """
    a = _normalize_empty(old_value)
    b = _normalize_empty(new_value)

    if a is None and b is None:
        return False
    if a is None or b is None:
        return True

    if isinstance(a, datetime):
        a = a.isoformat(timespec="seconds")
    if isinstance(b, datetime):
        b = b.isoformat(timespec="seconds")

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return True
        return sorted(_element_key(v) for v in a) != sorted(_element_key(v) for v in b)

    if _is_number(a) or _is_number(b):
        fa, fb = _as_float(a), _as_float(b)
        if fa is None or fb is None:
            return True
        return fa != fb

    if isinstance(a, str) and isinstance(b, str):
        if _is_local_date_time(a) and _is_local_date_time(b):
            return _pad_seconds(a) != _pad_seconds(b)

    return str(a) != str(b)


def detect_changes(
    original: Mapping[str, Any],
    modified: Mapping[str, Any],
    allow_list: Iterable[str] = NOTIFIABLE_FIELDS,
) -> list[Change]:
    """Detect notifiable changes between a stored record and an update.

    A field that is not present in ``modified`` was not sent and is skipped;
    a field sent as None is an explicit clear and is compared normally.

    Args:
        original: Snapshot of the reservation before the update.
        modified: Fields sent by the caller.
        allow_list: Fields to inspect, in output order.

    Returns:
        List of Change records, in allow-list order.
    """
    changes: list[Change] = []
    for field in allow_list:
        if field not in modified:
            continue
        new_value = modified[field]
        old_value = original.get(field)

        if values_are_different(old_value, new_value):
            changes.append(
                Change(
                    field=field,
                    old_value=old_value,
                    new_value=new_value,
                    display_name=get_field_display_name(field),
                )
            )
    return changes


def format_date_time(value: Any) -> str:
    """Render a local date-time as ``Wednesday, February 18, 2026 at 10:00 AM``.

    Unparseable input is returned unchanged.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return str(value)

    hour = dt.hour % 12 or 12
    meridiem = "AM" if dt.hour < 12 else "PM"
    return (
        f"{dt.strftime('%A')}, {dt.strftime('%B')} {dt.day}, {dt.year} "
        f"at {hour}:{dt.minute:02d} {meridiem}"
    )


def _format_mapping(value: Mapping[str, Any]) -> str:
    if not value:
        return NOT_SET
    return ", ".join(f"{k}: {value[k]}" for k in sorted(value))


def format_change_value(
    field: str,
    value: Any,
    *,
    location_map: Mapping[str, str] | None = None,
) -> str:
    """Render a raw field value for display in an email or conflict dialog.

    Args:
        field: Field name (drives date/time/boolean handling).
        value: Raw value.
        location_map: Optional location id -> display name lookup.

    Returns:
        Display string.
    """
    if value is None or value == "":
        return NOT_SET

    if field in DATE_TIME_FIELDS:
        return format_date_time(value)

    if field in TIME_ONLY_FIELDS:
        return str(value)

    if field in BOOLEAN_FIELDS:
        return "Yes" if value else "No"

    if isinstance(value, (bytes, bytearray, memoryview)):
        return "<binary>"

    if isinstance(value, (list, tuple)):
        if len(value) == 0:
            return NONE_LISTED
        if field == "locations" and location_map is not None:
            return ", ".join(location_map.get(str(v), str(v)) for v in value)
        rendered = []
        for item in value:
            if isinstance(item, Mapping):
                rendered.append(
                    str(item.get("displayName") or item.get("name") or _format_mapping(item))
                )
            else:
                rendered.append(str(item))
        return ", ".join(rendered)

    if isinstance(value, Mapping):
        return _format_mapping(value)

    return str(value)


def format_changes_for_email(
    changes: Iterable[Change],
    *,
    location_map: Mapping[str, str] | None = None,
) -> list[dict[str, str]]:
    """Shape changes as ``{displayName, oldValue, newValue}`` display rows."""
    return [
        {
            "displayName": change.display_name,
            "oldValue": format_change_value(change.field, change.old_value, location_map=location_map),
            "newValue": format_change_value(change.field, change.new_value, location_map=location_map),
        }
        for change in changes
    ]
