"""
Full current-state CSV export of non-deleted persons.
"""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import IO, Any, Iterator

from sqlalchemy.orm import Session

from registry_app.models import Person, db

from .snapshot import serialize_value

EXPORT_COLUMNS: tuple[str, ...] = (
    "id",
    "external_id",
    "name",
    "name_english",
    "gender",
    "date_of_birth",
    "date_of_death",
    "location_of_death_lat",
    "location_of_death_lng",
    "photo_url_original",
    "photo_url_thumb",
    "current_version",
    "created_at",
    "updated_at",
)

_ATTRIBUTE_FOR_COLUMN = {"current_version": "current_version_number"}


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float):
        return repr(value)
    serialized = serialize_value(value)
    return "" if serialized is None else str(serialized)


def export_row(person: Person) -> list[str]:
    return [_format_cell(getattr(person, _ATTRIBUTE_FOR_COLUMN.get(column, column))) for column in EXPORT_COLUMNS]


def iter_export_rows(session: Session | None = None, *, batch_size: int = 1000) -> Iterator[list[str]]:
    session = session or db.session
    query = (
        session.query(Person)
        .filter(Person.is_deleted.is_(False))
        .order_by(Person.id)
        .yield_per(batch_size)
    )
    for person in query:
        yield export_row(person)


def write_export(target: IO[str], session: Session | None = None) -> int:
    """
    Write the export to ``target`` and return the number of person rows.

    Fields holding a comma, quote, CR or LF are quoted with inner quotes doubled;
    every record ends with CRLF.
    """

    writer = csv.writer(target, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(EXPORT_COLUMNS)
    count = 0
    for row in iter_export_rows(session):
        writer.writerow(row)
        count += 1
    return count


def iter_export_chunks(session: Session | None = None) -> Iterator[str]:
    """Yield the export as text chunks suitable for a streamed response."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(EXPORT_COLUMNS)
    for index, row in enumerate(iter_export_rows(session), start=1):
        writer.writerow(row)
        if index % 500 == 0:
            yield buffer.getvalue()
            buffer.seek(0)
            buffer.truncate(0)
    yield buffer.getvalue()


def export_csv(session: Session | None = None) -> str:
    buffer = io.StringIO()
    write_export(buffer, session)
    return buffer.getvalue()
