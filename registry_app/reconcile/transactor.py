"""
Reconciliation transactor: applies diff ops as one attributable change batch.

Every batch creates its ChangeSource first, then writes one PersonVersion per op
and projects the new snapshot onto the Person row, all inside a single database
transaction. Person rows carry their version number as SQLAlchemy's
``version_id_col``, so a concurrent writer makes the flush fail instead of
silently skipping or duplicating a version.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Iterator, Sequence

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from registry_app.models import (
    AuditAction,
    AuditResourceType,
    BulkUpload,
    ChangeSource,
    ChangeSourceType,
    ChangeType,
    Person,
    PersonVersion,
    db,
)

from .audit import AuditRecorder
from .diff import DiffOp, DiffResult
from .errors import ConcurrentModificationError, ConflictError, ErrorKind, PersistenceError, ReconcileError
from .metrics import record_batch, record_conflict, record_simulation
from .principal import Principal
from .snapshot import changed_fields, empty_snapshot, merge_snapshot, person_snapshot, write_snapshot

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500

# Unique constraints whose violation means another writer got there first.
_CONCURRENCY_CONSTRAINT_TOKENS = (
    "persons.external_id",
    "persons_external_id",
    "ix_persons_external_id",
    "uq_person_versions_person_number",
    "person_versions.person_id",
    "reverts_source_id",
)


@dataclass
class SourceMeta:
    """Describes the logical operation behind a change batch."""

    source_type: ChangeSourceType
    description: str | None = None
    filename: str | None = None
    file_url: str | None = None
    file_size: int | None = None
    file_sha256: str | None = None
    content_type: str | None = None
    comment: str | None = None
    date_released: date | None = None
    reverts_source_id: int | None = None
    forced: bool = False
    audit_action: AuditAction | None = None
    audit_resource_type: AuditResourceType | None = None
    audit_resource_id: Any = None
    audit_details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None

    def upload_details(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "file_url": self.file_url,
            "file_size": self.file_size,
            "file_sha256": self.file_sha256,
            "comment": self.comment,
            "date_released": self.date_released.isoformat() if self.date_released else None,
        }


@dataclass
class ApplyResult:
    change_source_id: int
    stats: dict[str, int]
    version_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"change_source_id": self.change_source_id, "stats": dict(self.stats)}


def _chunked(items: Sequence[DiffOp], size: int) -> Iterator[Sequence[DiffOp]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _is_concurrency_violation(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(token in message for token in _CONCURRENCY_CONSTRAINT_TOKENS)


class ReconciliationTransactor:
    """Applies diff ops, the only writer of person versions and denormalized fields."""

    def __init__(self, session: Session | None = None, *, chunk_size: int | None = None):
        self.session = session or db.session
        self.chunk_size = chunk_size
        self.audit = AuditRecorder(self.session)

    def _resolve_chunk_size(self) -> int:
        if self.chunk_size:
            return max(1, int(self.chunk_size))
        if has_app_context():
            return max(1, int(current_app.config.get("REGISTRY_APPLY_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)))
        return DEFAULT_CHUNK_SIZE

    def _sample_size(self) -> int:
        if has_app_context():
            return int(current_app.config.get("REGISTRY_SIMULATE_SAMPLE_SIZE", 10))
        return 10

    def simulate(self, diff: DiffResult) -> dict[str, Any]:
        """Report what ``apply`` would do; never touches the session."""

        record_simulation()
        return diff.summary(self._sample_size())

    def apply_single(
        self,
        op: DiffOp,
        source_meta: SourceMeta,
        principal: Principal,
        *,
        commit: bool = True,
    ) -> ApplyResult:
        """Single-record path used by moderation approvals and manual edits."""

        diff = DiffResult()
        bucket = {
            ChangeType.INSERT: diff.inserts,
            ChangeType.UPDATE: diff.updates,
            ChangeType.DELETE: diff.deletes,
        }[op.change_type]
        bucket.append(op)
        return self.apply(diff, source_meta, principal, commit=commit)

    def apply(
        self,
        diff: DiffResult,
        source_meta: SourceMeta,
        principal: Principal,
        *,
        commit: bool = True,
    ) -> ApplyResult:
        """
        Apply every op in ``diff`` under one new ChangeSource.

        With ``commit=True`` (the default) the batch is committed here and any
        failure rolls the whole batch back. With ``commit=False`` the caller owns
        the transaction and must roll back on error.

        Raises:
            ConcurrentModificationError: a person moved past the version an op was
                computed against, or another writer inserted the same external id.
            PersistenceError: any other storage failure.
        """

        source_type = source_meta.source_type.value
        started = time.perf_counter()
        counts = diff.counts
        try:
            source = self._create_source(source_meta, principal, counts)
            version_ids: list[int] = []
            chunk_size = self._resolve_chunk_size()
            for chunk in _chunked(list(diff.iter_ops()), chunk_size):
                versions = self._apply_chunk(chunk, source.id)
                self.session.flush()
                version_ids.extend(version.id for version in versions)
            self._record_success_audit(source, source_meta, principal, counts)
            if commit:
                self.session.commit()
        except ReconcileError as exc:
            self._handle_failure(exc, source_meta, principal, commit=commit, started=started)
            raise
        except StaleDataError as exc:
            error = ConcurrentModificationError(
                "A person was modified by another operation while this batch was applied.",
                source_type=source_type,
            )
            self._handle_failure(error, source_meta, principal, commit=commit, started=started)
            raise error from exc
        except IntegrityError as exc:
            if _is_concurrency_violation(exc):
                error = ConcurrentModificationError(
                    "A conflicting write to the same person or version was committed first.",
                    source_type=source_type,
                )
            else:
                error = PersistenceError(f"Constraint violation while applying batch: {exc.orig}", source_type=source_type)
            self._handle_failure(error, source_meta, principal, commit=commit, started=started)
            raise error from exc
        except SQLAlchemyError as exc:
            error = PersistenceError(f"Database error while applying batch: {exc}", source_type=source_type)
            self._handle_failure(error, source_meta, principal, commit=commit, started=started)
            raise error from exc

        duration = time.perf_counter() - started
        record_batch(source_type=source_type, status="success", duration_seconds=duration, counts=counts)
        logger.info(
            "Applied change batch",
            extra={
                "change_source_id": source.id,
                "source_type": source_type,
                "principal_id": principal.id,
                "inserted": counts["inserted"],
                "updated": counts["updated"],
                "deleted": counts["deleted"],
                "duration_seconds": round(duration, 3),
            },
        )
        return ApplyResult(change_source_id=source.id, stats=dict(counts), version_ids=version_ids)

    def _create_source(self, meta: SourceMeta, principal: Principal, counts: dict[str, int]) -> ChangeSource:
        source = ChangeSource(
            type=meta.source_type,
            principal_id=principal.id,
            principal_role=principal.role.value,
            description=meta.description,
            stats_json=dict(counts),
            reverts_source_id=meta.reverts_source_id,
            forced=meta.forced,
        )
        self.session.add(source)
        if meta.source_type == ChangeSourceType.BULK_UPLOAD:
            self.session.add(
                BulkUpload(
                    change_source=source,
                    filename=meta.filename or "snapshot.csv",
                    file_url=meta.file_url,
                    file_size=meta.file_size,
                    file_sha256=meta.file_sha256,
                    content_type=meta.content_type,
                    comment=meta.comment,
                    date_released=meta.date_released,
                )
            )
        self.session.flush()
        return source

    def _apply_chunk(self, ops: Iterable[DiffOp], change_source_id: int) -> list[PersonVersion]:
        ops = list(ops)
        person_ids = [op.person_id for op in ops if op.person_id is not None]
        persons: dict[int, Person] = {}
        if person_ids:
            persons = {
                person.id: person
                for person in self.session.query(Person).filter(Person.id.in_(person_ids)).all()
            }

        versions: list[PersonVersion] = []
        for op in ops:
            if op.change_type == ChangeType.INSERT:
                versions.append(self._insert(op, change_source_id))
            else:
                person = persons.get(op.person_id)
                if person is None:
                    raise ConflictError(
                        f"Person {op.person_id} ({op.external_id}) no longer exists.",
                        person_id=op.person_id,
                        external_id=op.external_id,
                    )
                versions.append(self._revise(person, op, change_source_id))
        return versions

    def _insert(self, op: DiffOp, change_source_id: int) -> PersonVersion:
        if op.expected_version != 0:
            raise ConcurrentModificationError(
                f"Insert for {op.external_id} expected no prior versions.",
                external_id=op.external_id,
            )
        snapshot = merge_snapshot(empty_snapshot(), op.fields)
        person = Person(external_id=op.external_id, current_version_number=1, is_deleted=False)
        write_snapshot(person, snapshot)
        self.session.add(person)
        version = PersonVersion(
            person=person,
            version_number=1,
            change_type=ChangeType.INSERT,
            snapshot=snapshot,
            is_deleted=False,
            changed_fields=changed_fields(empty_snapshot(), snapshot),
            change_source_id=change_source_id,
        )
        self.session.add(version)
        return version

    def _revise(self, person: Person, op: DiffOp, change_source_id: int) -> PersonVersion:
        if person.current_version_number != op.expected_version:
            raise ConcurrentModificationError(
                f"Person {op.external_id} is at version {person.current_version_number}, "
                f"expected {op.expected_version}.",
                person_id=person.id,
                external_id=op.external_id,
                expected_version=op.expected_version,
                current_version=person.current_version_number,
            )

        before = person_snapshot(person)
        after = merge_snapshot(before, op.fields)
        deleted = op.change_type == ChangeType.DELETE
        next_number = person.current_version_number + 1

        write_snapshot(person, after)
        person.is_deleted = deleted
        person.current_version_number = next_number

        version = PersonVersion(
            person=person,
            version_number=next_number,
            change_type=op.change_type,
            snapshot=after,
            is_deleted=deleted,
            changed_fields=changed_fields(before, after),
            change_source_id=change_source_id,
        )
        self.session.add(version)
        return version

    def _record_success_audit(
        self,
        source: ChangeSource,
        meta: SourceMeta,
        principal: Principal,
        counts: dict[str, int],
    ) -> None:
        action = meta.audit_action
        resource_type = meta.audit_resource_type
        resource_id = meta.audit_resource_id
        if action is None and meta.source_type == ChangeSourceType.BULK_UPLOAD:
            action = AuditAction.BULK_UPLOAD_APPLIED
            resource_type = resource_type or AuditResourceType.BULK_UPLOAD
            resource_id = resource_id or source.id
        elif action is None and meta.source_type == ChangeSourceType.ROLLBACK:
            action = AuditAction.BULK_UPLOAD_ROLLED_BACK
            resource_type = resource_type or AuditResourceType.CHANGE_SOURCE
            resource_id = resource_id or meta.reverts_source_id
        if action is None:
            return

        details: dict[str, Any] = {
            "change_source_id": source.id,
            "source_type": meta.source_type.value,
            "stats": dict(counts),
        }
        if meta.source_type == ChangeSourceType.BULK_UPLOAD:
            details.update(meta.upload_details())
        if meta.reverts_source_id is not None:
            details["reverts_source_id"] = meta.reverts_source_id
            details["forced"] = meta.forced
        details.update(meta.audit_details)
        self.audit.record(
            principal,
            action,
            resource_type or AuditResourceType.CHANGE_SOURCE,
            resource_id if resource_id is not None else source.id,
            details,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )

    def _handle_failure(
        self,
        error: ReconcileError,
        meta: SourceMeta,
        principal: Principal,
        *,
        commit: bool,
        started: float,
    ) -> None:
        source_type = meta.source_type.value
        record_batch(source_type=source_type, status="failure", duration_seconds=time.perf_counter() - started)
        if error.kind == ErrorKind.CONFLICT:
            record_conflict(type(error).__name__)
        logger.warning(
            "Change batch failed",
            extra={
                "source_type": source_type,
                "principal_id": principal.id,
                "error_kind": error.kind.value,
                "error": error.message,
            },
        )
        if not commit:
            return

        self.session.rollback()
        if meta.source_type != ChangeSourceType.BULK_UPLOAD:
            return
        self.audit.record(
            principal,
            AuditAction.BULK_UPLOAD_FAILED,
            AuditResourceType.BULK_UPLOAD,
            None,
            {**meta.upload_details(), "error": error.message, "kind": error.kind.value},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        self.session.commit()
