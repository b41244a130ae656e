"""
Moderation workflow for community-submitted edits.

Submissions are validated when they are created, anchored to the version the
submitter saw, and decided exactly once. Approval goes through the transactor's
single-record path, so an approved edit is an ordinary versioned change.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.orm import Session

from registry_app.models import (
    COMMUNITY_FIELDS,
    AuditAction,
    AuditResourceType,
    ChangeSourceType,
    ChangeType,
    CommunitySubmission,
    Person,
    PersonVersion,
    SubmissionStatus,
    db,
)

from .audit import AuditRecorder
from .contracts import parse_iso_date
from .diff import DiffOp
from .errors import (
    ConflictError,
    NotFoundError,
    StaleBaseVersionError,
    SubmissionAlreadyDecidedError,
    SubmissionValidationError,
    ValidationError,
)
from .metrics import record_conflict, record_moderation_decision
from .principal import Principal
from .snapshot import person_snapshot, serialize_value
from .transactor import ReconciliationTransactor, SourceMeta

logger = logging.getLogger(__name__)

_PHOTO_FIELDS = ("photo_url_thumb", "photo_url_original")
_MAX_URL_LENGTH = 1024


@dataclass(slots=True)
class ModerationDecision:
    submission_id: int
    status: SubmissionStatus
    change_source_id: int | None = None
    applied_version_id: int | None = None
    rebased_from_version_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "status": self.status.value,
            "change_source_id": self.change_source_id,
            "applied_version_id": self.applied_version_id,
            "rebased_from_version_id": self.rebased_from_version_id,
        }


def _coerce_coordinate(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("not a number")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError("not a finite number")
    return number


def validate_submission_payload(payload: Any) -> dict[str, Any]:
    """
    Validate a proposed edit and return its normalized form.

    Raises:
        SubmissionValidationError: with a field-to-message mapping.
    """

    if not isinstance(payload, Mapping):
        raise SubmissionValidationError({"payload": "must be an object"})

    errors: dict[str, str] = {}
    disallowed = sorted(key for key in payload if key not in COMMUNITY_FIELDS)
    for key in disallowed:
        errors[key] = "field cannot be edited through a submission"

    normalized: dict[str, Any] = {}
    if "date_of_death" in payload:
        raw = payload["date_of_death"]
        try:
            parsed = parse_iso_date(raw)
        except (TypeError, ValueError):
            errors["date_of_death"] = "must be a YYYY-MM-DD date"
        else:
            if parsed is None:
                errors["date_of_death"] = "must be a YYYY-MM-DD date"
            else:
                normalized["date_of_death"] = parsed.isoformat()

    has_lat = payload.get("location_of_death_lat") is not None
    has_lng = payload.get("location_of_death_lng") is not None
    if has_lat != has_lng:
        errors["location_of_death"] = "latitude and longitude must be provided together"
    elif has_lat and has_lng:
        for key, bound in (("location_of_death_lat", 90.0), ("location_of_death_lng", 180.0)):
            try:
                number = _coerce_coordinate(payload[key])
            except (TypeError, ValueError):
                errors[key] = "must be a number"
                continue
            if number < -bound or number > bound:
                errors[key] = f"must be between {-bound:g} and {bound:g}"
                continue
            normalized[key] = number

    for key in _PHOTO_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if not isinstance(value, str) or not value.strip():
            errors[key] = "must be a non-empty URL string"
        elif len(value) > _MAX_URL_LENGTH:
            errors[key] = f"must be at most {_MAX_URL_LENGTH} characters"
        else:
            normalized[key] = value.strip()

    if not errors and not normalized:
        errors["payload"] = "at least one editable field is required"
    if errors:
        raise SubmissionValidationError(errors)
    return normalized


class ModerationService:
    """Service for creating and deciding community submissions."""

    def __init__(
        self,
        session: Session | None = None,
        transactor: ReconciliationTransactor | None = None,
        blob_store=None,
    ):
        self.session = session or db.session
        self.transactor = transactor or ReconciliationTransactor(self.session)
        self.audit = AuditRecorder(self.session)
        self.blob_store = blob_store

    def _latest_version(self, person: Person) -> PersonVersion | None:
        return (
            self.session.query(PersonVersion)
            .filter(
                PersonVersion.person_id == person.id,
                PersonVersion.version_number == person.current_version_number,
            )
            .one_or_none()
        )

    def get_submission(self, submission_id: int) -> CommunitySubmission:
        submission = self.session.get(CommunitySubmission, submission_id)
        if submission is None:
            raise NotFoundError(f"Submission {submission_id} not found.", submission_id=submission_id)
        return submission

    def list_submissions(
        self,
        *,
        status: SubmissionStatus | None = None,
        submitted_by: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CommunitySubmission], int]:
        query = self.session.query(CommunitySubmission)
        if status is not None:
            query = query.filter(CommunitySubmission.status == status)
        if submitted_by is not None:
            query = query.filter(CommunitySubmission.submitted_by == submitted_by)
        total = query.count()
        ordering = CommunitySubmission.id.asc() if status == SubmissionStatus.PENDING else CommunitySubmission.id.desc()
        submissions = query.order_by(ordering).offset(offset).limit(limit).all()
        return submissions, total

    def create_submission(
        self,
        person_id: int,
        payload: Any,
        principal: Principal,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> CommunitySubmission:
        """
        Validate and store a proposed edit anchored to the person's latest version.

        The caller commits.
        """

        normalized = validate_submission_payload(payload)
        person = self.session.get(Person, person_id)
        if person is None:
            raise NotFoundError(f"Person {person_id} not found.", person_id=person_id)
        if person.is_deleted:
            raise ValidationError(
                f"Person {person.external_id} has been deleted and cannot receive submissions.",
                person_id=person_id,
            )
        base_version = self._latest_version(person)
        if base_version is None:
            raise NotFoundError(f"Person {person_id} has no versions.", person_id=person_id)

        submission = CommunitySubmission(
            person_id=person.id,
            base_version_id=base_version.id,
            proposed_payload=normalized,
            status=SubmissionStatus.PENDING,
            submitted_by=principal.id,
        )
        self.session.add(submission)
        self.session.flush()
        self.audit.record(
            principal,
            AuditAction.COMMUNITY_SUBMISSION_CREATED,
            AuditResourceType.COMMUNITY_SUBMISSION,
            submission.id,
            {"person_id": person.id, "base_version_id": base_version.id, "fields": sorted(normalized)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return submission

    def _claim(
        self,
        submission: CommunitySubmission,
        status: SubmissionStatus,
        principal: Principal,
        note: str | None,
        **extra: Any,
    ) -> None:
        """Move a PENDING submission to ``status`` with a conditional update."""

        values = {
            CommunitySubmission.status: status,
            CommunitySubmission.decided_by: principal.id,
            CommunitySubmission.decided_at: datetime.now(timezone.utc),
            CommunitySubmission.decision_note: note,
            CommunitySubmission.updated_at: datetime.now(timezone.utc),
        }
        for key, value in extra.items():
            values[getattr(CommunitySubmission, key)] = value
        updated = (
            self.session.query(CommunitySubmission)
            .filter(
                CommunitySubmission.id == submission.id,
                CommunitySubmission.status == SubmissionStatus.PENDING,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            self.session.expire(submission)
            raise SubmissionAlreadyDecidedError(submission.id, submission.status.value)
        self.session.expire(submission)

    def approve(
        self,
        submission_id: int,
        principal: Principal,
        *,
        note: str | None = None,
        rebase: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ModerationDecision:
        """
        Apply a pending submission as one new person version.

        Raises:
            StaleBaseVersionError: the person changed since the submission was made
                and ``rebase`` is false.
            SubmissionAlreadyDecidedError: the submission is not PENDING.
            ConflictError: re-basing onto a person that has since been deleted.
        """

        submission = self.get_submission(submission_id)
        if submission.status != SubmissionStatus.PENDING:
            raise SubmissionAlreadyDecidedError(submission.id, submission.status.value)

        person = self.session.get(Person, submission.person_id)
        latest = self._latest_version(person) if person is not None else None
        if person is None or latest is None:
            raise NotFoundError(f"Person {submission.person_id} not found.", person_id=submission.person_id)

        rebased_from: int | None = None
        if latest.id != submission.base_version_id:
            if not rebase:
                record_conflict("stale_base_version")
                raise StaleBaseVersionError(submission.id, submission.base_version_id, latest.id)
            if person.is_deleted:
                record_conflict("rebase_onto_deleted")
                raise ConflictError(
                    f"Person {person.external_id} was deleted after submission {submission.id}; it cannot be re-based.",
                    submission_id=submission.id,
                    person_id=person.id,
                )
            rebased_from = submission.base_version_id

        current = person_snapshot(person)
        proposal = dict(submission.proposed_payload or {})
        op = DiffOp(
            change_type=ChangeType.UPDATE,
            external_id=person.external_id,
            person_id=person.id,
            expected_version=latest.version_number,
            fields=proposal,
            previous=current,
            changed_fields=tuple(
                key for key in proposal if serialize_value(current.get(key)) != serialize_value(proposal[key])
            ),
        )
        meta = SourceMeta(
            source_type=ChangeSourceType.COMMUNITY_SUBMISSION,
            description=f"Community submission {submission.id}",
        )
        try:
            result = self.transactor.apply_single(op, meta, principal, commit=False)
            applied_version_id = result.version_ids[0] if result.version_ids else None
            self._claim(
                submission,
                SubmissionStatus.APPROVED,
                principal,
                note,
                approved_change_source_id=result.change_source_id,
                applied_version_id=applied_version_id,
                rebased_from_version_id=rebased_from,
            )
            self.audit.record(
                principal,
                AuditAction.COMMUNITY_SUBMISSION_APPROVED,
                AuditResourceType.COMMUNITY_SUBMISSION,
                submission.id,
                {
                    "person_id": person.id,
                    "change_source_id": result.change_source_id,
                    "applied_version_id": applied_version_id,
                    "rebased_from_version_id": rebased_from,
                    "fields": sorted(proposal),
                    "note": note,
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        record_moderation_decision("approved")
        logger.info(
            "Approved community submission",
            extra={"submission_id": submission_id, "principal_id": principal.id, "rebased": rebased_from is not None},
        )
        return ModerationDecision(
            submission_id=submission_id,
            status=SubmissionStatus.APPROVED,
            change_source_id=result.change_source_id,
            applied_version_id=applied_version_id,
            rebased_from_version_id=rebased_from,
        )

    def reject(
        self,
        submission_id: int,
        principal: Principal,
        *,
        note: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ModerationDecision:
        """Reject a pending submission; no person or version is touched."""

        if not note or not str(note).strip():
            raise SubmissionValidationError({"note": "a rejection note is required"})
        note = str(note).strip()

        submission = self.get_submission(submission_id)
        if submission.status != SubmissionStatus.PENDING:
            raise SubmissionAlreadyDecidedError(submission.id, submission.status.value)
        proposal = dict(submission.proposed_payload or {})
        person_id = submission.person_id

        try:
            self._claim(submission, SubmissionStatus.REJECTED, principal, note)
            self.audit.record(
                principal,
                AuditAction.COMMUNITY_SUBMISSION_REJECTED,
                AuditResourceType.COMMUNITY_SUBMISSION,
                submission_id,
                {"person_id": person_id, "note": note},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        record_moderation_decision("rejected")
        self._discard_unused_photos(submission_id, person_id, proposal)
        return ModerationDecision(submission_id=submission_id, status=SubmissionStatus.REJECTED)

    def _referenced_photo_urls(self, person_id: int, excluding_submission_id: int) -> set[str]:
        """Photo URLs that must survive rejecting ``excluding_submission_id``."""

        referenced: set[str] = set()
        person = self.session.get(Person, person_id)
        if person is not None:
            referenced.update(getattr(person, key) for key in _PHOTO_FIELDS)
        snapshots = self.session.query(PersonVersion.snapshot).filter(PersonVersion.person_id == person_id)
        for (snapshot,) in snapshots:
            referenced.update((snapshot or {}).get(key) for key in _PHOTO_FIELDS)
        payloads = self.session.query(CommunitySubmission.proposed_payload).filter(
            CommunitySubmission.id != excluding_submission_id,
            CommunitySubmission.status != SubmissionStatus.REJECTED,
        )
        for (payload,) in payloads:
            referenced.update((payload or {}).get(key) for key in _PHOTO_FIELDS)
        referenced.discard(None)
        return referenced

    def _discard_unused_photos(self, submission_id: int, person_id: int, proposal: Mapping[str, Any]) -> None:
        if self.blob_store is None:
            return
        urls = [proposal[key] for key in _PHOTO_FIELDS if proposal.get(key)]
        if not urls:
            return
        in_use = self._referenced_photo_urls(person_id, submission_id)
        orphaned = [url for url in urls if url not in in_use]
        if orphaned:
            self.blob_store.delete(orphaned)
