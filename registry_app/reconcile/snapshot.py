"""
Field snapshot helpers shared by the diff engine, the transactor and history checks.

A snapshot is the JSON-safe dict stored on every PersonVersion: dates as ISO
``YYYY-MM-DD`` strings, gender as its enum value, coordinates as floats and
absent values as ``None``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Session

from registry_app.models import SNAPSHOT_FIELDS, ChangeType, Gender, Person, PersonVersion

from .contracts import parse_iso_date

_DATE_FIELDS = frozenset({"date_of_birth", "date_of_death"})
_FLOAT_FIELDS = frozenset({"location_of_death_lat", "location_of_death_lng"})


def serialize_value(value: Any) -> Any:
    """Convert a column value into its snapshot representation."""

    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Null-aware equality: blank and ``None`` match, numbers compare by value."""

    left = serialize_value(left)
    right = serialize_value(right)
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return float(left) == float(right)
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        try:
            return float(left) == float(right)
        except (TypeError, ValueError):
            return False
    return left == right


def person_snapshot(person: Person) -> dict[str, Any]:
    return {name: serialize_value(getattr(person, name)) for name in SNAPSHOT_FIELDS}


def empty_snapshot() -> dict[str, Any]:
    return {name: None for name in SNAPSHOT_FIELDS}


def merge_snapshot(base: Mapping[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay ``changes`` on ``base``; unknown keys are ignored."""

    merged = {name: serialize_value(base.get(name)) for name in SNAPSHOT_FIELDS}
    for name, value in changes.items():
        if name in merged:
            merged[name] = serialize_value(value)
    return merged


def changed_fields(before: Mapping[str, Any], after: Mapping[str, Any]) -> list[str]:
    return [name for name in SNAPSHOT_FIELDS if not values_equal(before.get(name), after.get(name))]


def coerce_column_value(name: str, value: Any) -> Any:
    """Convert a snapshot value back into the Person column type."""

    value = serialize_value(value)
    if value is None:
        return None
    if name in _DATE_FIELDS:
        return parse_iso_date(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name == "gender":
        return Gender(str(value).upper())
    return value


def write_snapshot(person: Person, snapshot: Mapping[str, Any]) -> None:
    """Project ``snapshot`` onto the person's denormalized columns."""

    for name in SNAPSHOT_FIELDS:
        setattr(person, name, coerce_column_value(name, snapshot.get(name)))


@dataclass
class ReplayState:
    snapshot: dict[str, Any] = field(default_factory=empty_snapshot)
    is_deleted: bool = False
    version_number: int = 0


class HistoryIntegrityError(ValueError):
    """Raised when a version chain cannot be replayed."""


def replay_versions(versions: Iterable[PersonVersion]) -> ReplayState:
    """
    Replay a person's versions in order and return the resulting state.

    Raises:
        HistoryIntegrityError: numbering is not gap-free from 1, or the chain does
            not start with an INSERT.
    """

    state = ReplayState()
    for version in sorted(versions, key=lambda item: item.version_number):
        expected = state.version_number + 1
        if version.version_number != expected:
            raise HistoryIntegrityError(f"expected version {expected}, found {version.version_number}")
        if expected == 1 and version.change_type != ChangeType.INSERT:
            raise HistoryIntegrityError("history does not start with an INSERT version")
        state.snapshot = merge_snapshot(empty_snapshot(), version.snapshot or {})
        state.is_deleted = version.change_type == ChangeType.DELETE
        state.version_number = version.version_number
    return state


def verify_person_history(session: Session, person: Person) -> list[str]:
    """
    Compare a person's denormalized state with the replay of its versions.

    Returns a list of human-readable discrepancies; empty when consistent.
    """

    versions = (
        session.query(PersonVersion)
        .filter(PersonVersion.person_id == person.id)
        .order_by(PersonVersion.version_number)
        .all()
    )
    try:
        state = replay_versions(versions)
    except HistoryIntegrityError as exc:
        return [str(exc)]

    issues: list[str] = []
    if state.version_number != person.current_version_number:
        issues.append(
            f"current_version_number is {person.current_version_number} but history ends at {state.version_number}"
        )
    if state.is_deleted != bool(person.is_deleted):
        issues.append(f"is_deleted is {person.is_deleted} but history says {state.is_deleted}")
    current = person_snapshot(person)
    for name in changed_fields(state.snapshot, current):
        issues.append(f"{name} is {current.get(name)!r} but history says {state.snapshot.get(name)!r}")
    for version in versions:
        if bool(version.is_deleted) != (version.change_type == ChangeType.DELETE):
            issues.append(f"version {version.version_number} has an inconsistent deleted flag")
    return issues
