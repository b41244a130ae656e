"""Canonical bulk snapshot contract.

One place that defines which CSV columns a bulk snapshot may carry, how their
values are normalized, and which values are acceptable. The CSV adapter
validates headers and rows against it before any diff is computed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Mapping, Tuple

from registry_app.models import Gender

Normalizer = Callable[[object | None], object | None]
Validator = Callable[[object | None], str | None]


def _blank_to_none(value: object | None) -> object | None:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _upper_blank_to_none(value: object | None) -> object | None:
    value = _blank_to_none(value)
    if isinstance(value, str):
        return value.upper()
    return value


def parse_iso_date(value: object | None) -> date | None:
    """Parse a strict ``YYYY-MM-DD`` string; ``None`` passes through."""

    if value is None or isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) != 10 or text[4] != "-" or text[7] != "-":
        raise ValueError(f"'{text}' is not a YYYY-MM-DD date")
    return date.fromisoformat(text)


def _require_value(value: object | None) -> str | None:
    if value is None:
        return "value is required"
    return None


def _validate_gender(value: object | None) -> str | None:
    if value is None:
        return None
    allowed = {member.value for member in Gender}
    if value not in allowed:
        return f"invalid gender '{value}'; expected one of {', '.join(sorted(allowed))}"
    return None


def _validate_date(value: object | None) -> str | None:
    try:
        parse_iso_date(value)
    except ValueError:
        return f"invalid date '{value}'; expected YYYY-MM-DD"
    return None


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical snapshot column."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _blank_to_none
    validator: Validator | None = None

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases for validation."""

        return (self.name, *self.aliases)


SNAPSHOT_CANONICAL_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="external_id",
        description="Stable identifier supplied by the data provider; the reconciliation key.",
        required=True,
        aliases=("externalid", "id"),
        validator=_require_value,
    ),
    FieldSpec(
        name="name",
        description="Full name in the original script.",
        required=True,
        validator=_require_value,
    ),
    FieldSpec(
        name="name_english",
        description="Transliterated or English name.",
        aliases=("nameenglish", "english_name"),
    ),
    FieldSpec(
        name="gender",
        description="MALE, FEMALE or OTHER (case-insensitive).",
        normalizer=_upper_blank_to_none,
        validator=_validate_gender,
    ),
    FieldSpec(
        name="date_of_birth",
        description="Date of birth (YYYY-MM-DD).",
        aliases=("dateofbirth", "dob", "birth_date"),
        validator=_validate_date,
    ),
)

# Columns owned by community submissions; a bulk snapshot must never carry them.
FORBIDDEN_SNAPSHOT_HEADERS: Tuple[str, ...] = (
    "date_of_death",
    "location_of_death",
    "location_of_death_lat",
    "location_of_death_lng",
    "photo_url_thumb",
    "photo_url_original",
    "obituary",
)


def get_snapshot_field_specs() -> Tuple[FieldSpec, ...]:
    return SNAPSHOT_CANONICAL_FIELDS


def get_snapshot_required_headers() -> Tuple[str, ...]:
    """Headers that must be present in every bulk snapshot."""

    return tuple(field.name for field in SNAPSHOT_CANONICAL_FIELDS if field.required)


def get_snapshot_managed_fields() -> Tuple[str, ...]:
    """Person fields a snapshot owns (every column except the key)."""

    return tuple(field.name for field in SNAPSHOT_CANONICAL_FIELDS if field.name != "external_id")


def get_snapshot_alias_map() -> Mapping[str, str]:
    """Map normalized header tokens to canonical names (includes aliases)."""

    mapping: dict[str, str] = {}
    for field in SNAPSHOT_CANONICAL_FIELDS:
        for header in field.headers():
            mapping[normalize_header(header)] = field.name
    return mapping


def get_forbidden_headers() -> frozenset[str]:
    forbidden = {normalize_header(header) for header in FORBIDDEN_SNAPSHOT_HEADERS}
    # camelCase exports from the public API normalize to these tokens.
    forbidden.update(header.replace("_", "") for header in list(forbidden))
    return frozenset(forbidden)


def normalize_header(header: str) -> str:
    """Normalize a CSV header for comparison (case/space/underscore agnostic)."""

    token = header.strip().lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token
