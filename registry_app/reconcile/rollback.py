"""
Rollback coordinator for applied bulk uploads.

A rollback never rewrites history. It computes the compensating op for every
version the target batch produced and applies those ops as a new ROLLBACK change
source through the transactor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import tuple_
from sqlalchemy.orm import Session

from registry_app.models import ChangeSource, ChangeSourceType, ChangeType, Person, PersonVersion, db

from .diff import DiffOp, DiffResult
from .errors import AlreadyRolledBackError, NotFoundError, RollbackConflictError, RollbackNotEligibleError
from .principal import Principal
from .snapshot import merge_snapshot, person_snapshot, values_equal
from .transactor import ApplyResult, ReconciliationTransactor, SourceMeta

logger = logging.getLogger(__name__)

_LOOKUP_CHUNK = 500


@dataclass
class RollbackPlan:
    change_source_id: int
    diff: DiffResult
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    skipped: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "change_source_id": self.change_source_id,
            **self.diff.counts,
            "conflicts": list(self.conflicts),
            "skipped": self.skipped,
        }


class RollbackCoordinator:
    def __init__(self, session: Session | None = None, transactor: ReconciliationTransactor | None = None):
        self.session = session or db.session
        self.transactor = transactor or ReconciliationTransactor(self.session)

    def _load_target(self, change_source_id: int) -> ChangeSource:
        source = self.session.get(ChangeSource, change_source_id)
        if source is None:
            raise NotFoundError(f"Change source {change_source_id} not found.", change_source_id=change_source_id)
        if not source.is_rollback_eligible:
            raise RollbackNotEligibleError(change_source_id, source.type.value)
        existing = (
            self.session.query(ChangeSource.id)
            .filter(ChangeSource.reverts_source_id == change_source_id)
            .first()
        )
        if existing is not None:
            raise AlreadyRolledBackError(change_source_id, existing[0])
        return source

    def _load_persons(self, person_ids: list[int]) -> dict[int, Person]:
        persons: dict[int, Person] = {}
        for start in range(0, len(person_ids), _LOOKUP_CHUNK):
            chunk = person_ids[start : start + _LOOKUP_CHUNK]
            for person in self.session.query(Person).filter(Person.id.in_(chunk)).all():
                persons[person.id] = person
        return persons

    def _load_versions(self, keys: list[tuple[int, int]]) -> dict[tuple[int, int], PersonVersion]:
        found: dict[tuple[int, int], PersonVersion] = {}
        for start in range(0, len(keys), _LOOKUP_CHUNK):
            chunk = keys[start : start + _LOOKUP_CHUNK]
            rows = (
                self.session.query(PersonVersion)
                .filter(tuple_(PersonVersion.person_id, PersonVersion.version_number).in_(chunk))
                .all()
            )
            for version in rows:
                found[(version.person_id, version.version_number)] = version
        return found

    def plan(self, change_source_id: int, *, force: bool = False) -> RollbackPlan:
        """
        Compute the compensating diff for ``change_source_id`` without applying it.

        Raises:
            NotFoundError: no such change source.
            RollbackNotEligibleError: the source is not a bulk upload.
            AlreadyRolledBackError: a ROLLBACK source already reverts it.
            RollbackConflictError: later changes touched affected persons and
                ``force`` is false.
        """

        self._load_target(change_source_id)
        batch_versions = (
            self.session.query(PersonVersion)
            .filter(PersonVersion.change_source_id == change_source_id)
            .order_by(PersonVersion.id)
            .all()
        )

        # A batch writes at most one version per person; keep the bounds in case of several.
        first_by_person: dict[int, PersonVersion] = {}
        last_by_person: dict[int, PersonVersion] = {}
        for version in batch_versions:
            first = first_by_person.get(version.person_id)
            if first is None or version.version_number < first.version_number:
                first_by_person[version.person_id] = version
            last = last_by_person.get(version.person_id)
            if last is None or version.version_number > last.version_number:
                last_by_person[version.person_id] = version

        persons = self._load_persons(list(first_by_person))
        preceding = self._load_versions(
            [
                (person_id, version.version_number - 1)
                for person_id, version in first_by_person.items()
                if version.change_type != ChangeType.INSERT
            ]
        )

        plan = RollbackPlan(change_source_id=change_source_id, diff=DiffResult(managed_fields=()))
        for person_id, origin in first_by_person.items():
            person = persons[person_id]
            last = last_by_person[person_id]
            if person.current_version_number > last.version_number:
                plan.conflicts.append(
                    {
                        "person_id": person_id,
                        "external_id": person.external_id,
                        "batch_version": last.version_number,
                        "current_version": person.current_version_number,
                    }
                )

            if origin.change_type == ChangeType.INSERT:
                target_snapshot = person_snapshot(person)
                target_deleted = True
            else:
                prior = preceding.get((person_id, origin.version_number - 1))
                if prior is None:
                    raise NotFoundError(
                        f"Version {origin.version_number - 1} of person {person.external_id} is missing.",
                        person_id=person_id,
                        version_number=origin.version_number - 1,
                    )
                target_snapshot = merge_snapshot({}, prior.snapshot or {})
                target_deleted = bool(prior.is_deleted)

            current = person_snapshot(person)
            if target_deleted == bool(person.is_deleted) and all(
                values_equal(current.get(name), value) for name, value in target_snapshot.items()
            ):
                plan.skipped += 1
                continue

            op = DiffOp(
                change_type=ChangeType.DELETE if target_deleted else ChangeType.UPDATE,
                external_id=person.external_id,
                person_id=person_id,
                expected_version=person.current_version_number,
                fields=target_snapshot,
                previous=current,
                undelete=bool(person.is_deleted) and not target_deleted,
                changed_fields=tuple(
                    name for name, value in target_snapshot.items() if not values_equal(current.get(name), value)
                ),
            )
            if op.change_type == ChangeType.DELETE:
                plan.diff.deletes.append(op)
            else:
                plan.diff.updates.append(op)

        if plan.conflicts and not force:
            raise RollbackConflictError(change_source_id, plan.conflicts)
        return plan

    def rollback(
        self,
        change_source_id: int,
        principal: Principal,
        *,
        force: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApplyResult:
        """Revert a bulk upload by appending compensating versions under a ROLLBACK source."""

        plan = self.plan(change_source_id, force=force)
        forced = bool(force and plan.conflicts)
        meta = SourceMeta(
            source_type=ChangeSourceType.ROLLBACK,
            description=f"Rollback of change source {change_source_id}",
            reverts_source_id=change_source_id,
            forced=forced,
            audit_details={"conflicts": plan.conflicts if forced else [], "skipped": plan.skipped},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        result = self.transactor.apply(plan.diff, meta, principal)
        logger.info(
            "Rolled back change source",
            extra={
                "change_source_id": change_source_id,
                "rollback_source_id": result.change_source_id,
                "forced": forced,
                "principal_id": principal.id,
            },
        )
        return result
