"""
Typed failures raised by the reconciliation engine.

Every error carries an :class:`ErrorKind` plus the identifiers it concerns, so the
HTTP and CLI boundaries can choose a status without inspecting messages.
"""

from __future__ import annotations

import enum
from typing import Any, Mapping, Sequence


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    PERSISTENCE = "persistence"
    FORBIDDEN = "forbidden"


class ReconcileError(Exception):
    """Base exception for registry engine failures."""

    kind: ErrorKind = ErrorKind.PERSISTENCE

    def __init__(self, message: str, **identifiers: Any) -> None:
        super().__init__(message)
        self.message = message
        self.identifiers: dict[str, Any] = identifiers

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "kind": self.kind.value, "details": dict(self.identifiers)}


class ValidationError(ReconcileError):
    """Input was rejected before any mutation."""

    kind = ErrorKind.VALIDATION


class ConflictError(ReconcileError):
    """A precondition on current state no longer holds; callers may resolve and retry."""

    kind = ErrorKind.CONFLICT


class NotFoundError(ReconcileError):
    kind = ErrorKind.NOT_FOUND


class PersistenceError(ReconcileError):
    """The storage layer aborted the unit of work; nothing was applied."""

    kind = ErrorKind.PERSISTENCE


class ForbiddenError(ReconcileError):
    kind = ErrorKind.FORBIDDEN


class SnapshotValidationError(ValidationError):
    """Raised when a bulk snapshot is malformed; carries every collected row error."""

    def __init__(self, errors: Sequence[Mapping[str, Any]], *, truncated: bool = False) -> None:
        count = len(errors)
        suffix = " (more errors omitted)" if truncated else ""
        super().__init__(
            f"Snapshot failed validation with {count} error(s){suffix}.",
            errors=[dict(error) for error in errors],
            truncated=truncated,
        )
        self.errors: list[Mapping[str, Any]] = list(errors)


class SubmissionValidationError(ValidationError):
    def __init__(self, errors: Mapping[str, str]) -> None:
        super().__init__("Submission failed validation.", errors=dict(errors))
        self.errors: dict[str, str] = dict(errors)


class RollbackNotEligibleError(ValidationError):
    def __init__(self, change_source_id: int, source_type: str) -> None:
        super().__init__(
            f"Change source {change_source_id} of type {source_type} cannot be rolled back; "
            "only BULK_UPLOAD sources are eligible.",
            change_source_id=change_source_id,
            source_type=source_type,
        )


class DuplicateExternalIdError(ConflictError):
    """Raised when one snapshot lists the same external id more than once."""

    def __init__(self, duplicates: Mapping[str, Sequence[int | None]]) -> None:
        listing = ", ".join(sorted(duplicates))
        super().__init__(
            f"Duplicate external ids in snapshot: {listing}.",
            duplicates={key: list(lines) for key, lines in duplicates.items()},
        )
        self.duplicates = dict(duplicates)


class ConcurrentModificationError(ConflictError):
    """A person changed between diff computation and commit."""


class StaleBaseVersionError(ConflictError):
    def __init__(self, submission_id: int, base_version_id: int, current_version_id: int | None) -> None:
        super().__init__(
            f"Submission {submission_id} was made against version {base_version_id}, "
            f"but the person is now at version {current_version_id}. Re-base or reject it.",
            submission_id=submission_id,
            base_version_id=base_version_id,
            current_version_id=current_version_id,
        )


class SubmissionAlreadyDecidedError(ConflictError):
    def __init__(self, submission_id: int, status: str) -> None:
        super().__init__(
            f"Submission {submission_id} is already {status}.",
            submission_id=submission_id,
            status=status,
        )


class AlreadyRolledBackError(ConflictError):
    def __init__(self, change_source_id: int, rollback_source_id: int | None) -> None:
        super().__init__(
            f"Change source {change_source_id} has already been rolled back.",
            change_source_id=change_source_id,
            rollback_source_id=rollback_source_id,
        )


class RollbackConflictError(ConflictError):
    """Later changes exist for persons touched by the batch being rolled back."""

    def __init__(self, change_source_id: int, conflicts: Sequence[Mapping[str, Any]]) -> None:
        super().__init__(
            f"Cannot rollback: conflicting later changes exist for {len(conflicts)} record(s). "
            "Roll back later batches first or force the rollback.",
            change_source_id=change_source_id,
            conflicts=[dict(conflict) for conflict in conflicts],
        )
        self.conflicts = list(conflicts)
