"""
Snapshot diff engine.

Classifies an incoming full snapshot against the current registry state in a
single pass over each side. The current state is loaded once as an index keyed
by external id; no per-row queries are issued while diffing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, Sequence

from sqlalchemy.orm import Session

from registry_app.models import BULK_MANAGED_FIELDS, SNAPSHOT_FIELDS, ChangeType, Person

from .errors import DuplicateExternalIdError
from .snapshot import serialize_value, values_equal


@dataclass(frozen=True)
class CurrentRecord:
    """Latest known state for one external id."""

    person_id: int
    version_number: int
    is_deleted: bool
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class SnapshotRow:
    external_id: str
    fields: Mapping[str, Any]
    source_line: int | None = None


@dataclass(frozen=True)
class DiffOp:
    """
    One candidate change.

    ``expected_version`` is the person's version number the op was computed
    against (``0`` for inserts); applying it to any other version is a conflict.
    ``fields`` holds target values merged over the person's snapshot when applied.
    """

    change_type: ChangeType
    external_id: str
    person_id: int | None
    expected_version: int
    fields: Mapping[str, Any]
    previous: Mapping[str, Any] | None = None
    undelete: bool = False
    changed_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "external_id": self.external_id,
            "person_id": self.person_id,
            "expected_version": self.expected_version,
            "changed_fields": list(self.changed_fields),
            "undelete": self.undelete,
        }


@dataclass
class DiffResult:
    inserts: list[DiffOp] = field(default_factory=list)
    updates: list[DiffOp] = field(default_factory=list)
    deletes: list[DiffOp] = field(default_factory=list)
    unchanged: int = 0
    rows_incoming: int = 0
    managed_fields: tuple[str, ...] = BULK_MANAGED_FIELDS

    @property
    def counts(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserts),
            "updated": len(self.updates),
            "deleted": len(self.deletes),
        }

    @property
    def undeletes(self) -> int:
        return sum(1 for op in self.updates if op.undelete)

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)

    def __len__(self) -> int:
        return len(self.inserts) + len(self.updates) + len(self.deletes)

    def iter_ops(self) -> Iterator[DiffOp]:
        yield from self.inserts
        yield from self.updates
        yield from self.deletes

    def summary(self, sample_size: int = 10) -> dict[str, Any]:
        """Counts plus the first ``sample_size`` external ids per category."""

        return {
            **self.counts,
            "unchanged": self.unchanged,
            "undeleted": self.undeletes,
            "rows_incoming": self.rows_incoming,
            "managed_fields": list(self.managed_fields),
            "samples": {
                "inserted": [op.external_id for op in self.inserts[:sample_size]],
                "updated": [op.to_dict() for op in self.updates[:sample_size]],
                "deleted": [op.external_id for op in self.deletes[:sample_size]],
            },
        }


def compute_diff(
    current_state: Mapping[str, CurrentRecord],
    incoming_rows: Iterable[SnapshotRow],
    *,
    fields: Sequence[str] = BULK_MANAGED_FIELDS,
) -> DiffResult:
    """
    Compute INSERT/UPDATE/DELETE ops turning ``current_state`` into ``incoming_rows``.

    Only ``fields`` take part in comparisons; any other snapshot field is left to
    its own change channel. A soft-deleted person that reappears becomes an
    undelete UPDATE even when its managed fields are unchanged.

    Raises:
        DuplicateExternalIdError: an external id appears more than once in the
            incoming snapshot. Nothing is classified in that case.
    """

    managed = tuple(fields)
    result = DiffResult(managed_fields=managed)
    seen: dict[str, int | None] = {}
    duplicates: dict[str, list[int | None]] = {}

    for row in incoming_rows:
        result.rows_incoming += 1
        external_id = row.external_id
        if external_id in seen:
            lines = duplicates.setdefault(external_id, [seen[external_id]])
            lines.append(row.source_line)
            continue
        seen[external_id] = row.source_line
        if duplicates:
            # Keep scanning so every duplicate is reported, but stop classifying.
            continue

        incoming = {name: serialize_value(row.fields.get(name)) for name in managed}
        record = current_state.get(external_id)
        if record is None:
            result.inserts.append(
                DiffOp(
                    change_type=ChangeType.INSERT,
                    external_id=external_id,
                    person_id=None,
                    expected_version=0,
                    fields=incoming,
                    changed_fields=tuple(name for name in managed if incoming.get(name) is not None),
                )
            )
            continue

        differing = tuple(name for name in managed if not values_equal(record.fields.get(name), incoming.get(name)))
        if not differing and not record.is_deleted:
            result.unchanged += 1
            continue

        result.updates.append(
            DiffOp(
                change_type=ChangeType.UPDATE,
                external_id=external_id,
                person_id=record.person_id,
                expected_version=record.version_number,
                fields=incoming,
                previous=dict(record.fields),
                undelete=record.is_deleted,
                changed_fields=differing,
            )
        )

    if duplicates:
        raise DuplicateExternalIdError(duplicates)

    for external_id, record in current_state.items():
        if record.is_deleted or external_id in seen:
            continue
        result.deletes.append(
            DiffOp(
                change_type=ChangeType.DELETE,
                external_id=external_id,
                person_id=record.person_id,
                expected_version=record.version_number,
                fields={},
                previous=dict(record.fields),
            )
        )

    return result


def load_current_state(session: Session, *, batch_size: int = 1000) -> dict[str, CurrentRecord]:
    """
    Load the current registry index in one streamed query.
    """

    columns = [getattr(Person, name) for name in SNAPSHOT_FIELDS]
    query = (
        session.query(
            Person.id,
            Person.external_id,
            Person.current_version_number,
            Person.is_deleted,
            *columns,
        )
        .order_by(Person.id)
        .yield_per(batch_size)
    )

    state: dict[str, CurrentRecord] = {}
    for row in query:
        person_id, external_id, version_number, is_deleted, *values = row
        state[external_id] = CurrentRecord(
            person_id=person_id,
            version_number=version_number,
            is_deleted=bool(is_deleted),
            fields={name: serialize_value(value) for name, value in zip(SNAPSHOT_FIELDS, values)},
        )
    return state
