"""
Administrator edits and soft deletes of single persons.

Both go through the transactor's single-record path under a MANUAL change source,
so they are versioned and audited like every other change.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.orm import Session

from registry_app.models import (
    COMMUNITY_FIELDS,
    SNAPSHOT_FIELDS,
    AuditAction,
    AuditResourceType,
    ChangeSourceType,
    ChangeType,
    Person,
    db,
)

from .contracts import get_snapshot_field_specs
from .diff import DiffOp
from .errors import ConcurrentModificationError, NotFoundError, SubmissionValidationError, ValidationError
from .metrics import record_conflict
from .moderation import validate_submission_payload
from .principal import Principal
from .snapshot import person_snapshot, values_equal
from .transactor import ApplyResult, ReconciliationTransactor, SourceMeta

logger = logging.getLogger(__name__)

_LAT = "location_of_death_lat"
_LNG = "location_of_death_lng"


def validate_manual_fields(fields: Any) -> dict[str, Any]:
    """
    Validate an administrator's field edit.

    Bulk-owned fields follow the snapshot column rules; community fields follow the
    submission rules, except that ``None`` clears a community field.

    Raises:
        SubmissionValidationError: with a field-to-message mapping.
    """

    if not isinstance(fields, Mapping) or not fields:
        raise SubmissionValidationError({"fields": "must be a non-empty object"})

    errors: dict[str, str] = {}
    normalized: dict[str, Any] = {}
    specs = {spec.name: spec for spec in get_snapshot_field_specs()}

    for key in fields:
        if key not in SNAPSHOT_FIELDS:
            errors[key] = "unknown field"

    for name, spec in specs.items():
        if name == "external_id" or name not in fields:
            continue
        if fields[name] is not None and not isinstance(fields[name], str):
            errors[name] = "must be a string"
            continue
        value = spec.normalizer(fields[name]) if spec.normalizer else fields[name]
        if spec.required and value is None:
            errors[name] = "value is required"
            continue
        message = spec.validator(value) if spec.validator else None
        if message:
            errors[name] = message
            continue
        normalized[name] = value

    if (_LAT in fields) != (_LNG in fields):
        errors["location_of_death"] = "latitude and longitude must be set or cleared together"

    community = {key: fields[key] for key in COMMUNITY_FIELDS if key in fields}
    cleared = [key for key, value in community.items() if value is None]
    provided = {key: value for key, value in community.items() if value is not None}
    for key in cleared:
        normalized[key] = None
    if provided:
        try:
            normalized.update(validate_submission_payload(provided))
        except SubmissionValidationError as exc:
            errors.update(exc.errors)

    if errors:
        raise SubmissionValidationError(errors)
    return normalized


class PersonEditService:
    def __init__(self, session: Session | None = None, transactor: ReconciliationTransactor | None = None):
        self.session = session or db.session
        self.transactor = transactor or ReconciliationTransactor(self.session)

    def _load(self, person_id: int, expected_version: int | None) -> Person:
        person = self.session.get(Person, person_id)
        if person is None:
            raise NotFoundError(f"Person {person_id} not found.", person_id=person_id)
        if expected_version is None:
            raise ValidationError("expected_version is required.", person_id=person_id)
        if person.current_version_number != expected_version:
            record_conflict("stale_manual_edit")
            raise ConcurrentModificationError(
                f"Person {person.external_id} is at version {person.current_version_number}, "
                f"expected {expected_version}.",
                person_id=person.id,
                expected_version=expected_version,
                current_version=person.current_version_number,
            )
        return person

    def edit(
        self,
        person_id: int,
        fields: Any,
        principal: Principal,
        *,
        expected_version: int | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApplyResult:
        """Write one MANUAL version with ``fields`` merged over the current snapshot."""

        normalized = validate_manual_fields(fields)
        person = self._load(person_id, expected_version)
        if person.is_deleted:
            raise ValidationError(f"Person {person.external_id} is deleted.", person_id=person.id)

        current = person_snapshot(person)
        differing = tuple(name for name, value in normalized.items() if not values_equal(current.get(name), value))
        if not differing:
            raise ValidationError("The edit does not change any field.", person_id=person.id)

        op = DiffOp(
            change_type=ChangeType.UPDATE,
            external_id=person.external_id,
            person_id=person.id,
            expected_version=person.current_version_number,
            fields=normalized,
            previous=current,
            changed_fields=differing,
        )
        meta = SourceMeta(
            source_type=ChangeSourceType.MANUAL,
            description=f"Manual edit of person {person.external_id}",
            audit_action=AuditAction.PERSON_MANUALLY_EDITED,
            audit_resource_type=AuditResourceType.PERSON,
            audit_resource_id=person.id,
            audit_details={"fields": list(differing)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        result = self.transactor.apply_single(op, meta, principal)
        logger.info(
            "Manually edited person",
            extra={"person_id": person_id, "principal_id": principal.id, "fields": list(differing)},
        )
        return result

    def delete(
        self,
        person_id: int,
        principal: Principal,
        *,
        expected_version: int | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApplyResult:
        person = self._load(person_id, expected_version)
        if person.is_deleted:
            raise ValidationError(f"Person {person.external_id} is already deleted.", person_id=person.id)

        op = DiffOp(
            change_type=ChangeType.DELETE,
            external_id=person.external_id,
            person_id=person.id,
            expected_version=person.current_version_number,
            fields={},
            previous=person_snapshot(person),
        )
        meta = SourceMeta(
            source_type=ChangeSourceType.MANUAL,
            description=f"Manual delete of person {person.external_id}",
            audit_action=AuditAction.PERSON_MANUALLY_DELETED,
            audit_resource_type=AuditResourceType.PERSON,
            audit_resource_id=person.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        result = self.transactor.apply_single(op, meta, principal)
        logger.info("Manually deleted person", extra={"person_id": person_id, "principal_id": principal.id})
        return result
