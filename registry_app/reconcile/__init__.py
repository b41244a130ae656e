"""
Reconciliation engine: diffing, versioned application, rollback and moderation.

``init_registry`` wires the engine into a Flask app: it registers the
``flask registry`` commands and the blob store collaborator.
"""

from __future__ import annotations

from flask import Flask

from registry_app.services import init_blob_store

from .audit import AuditRecorder
from .bulk import BulkUploadService, ParsedSnapshot
from .cli import registry_cli
from .diff import CurrentRecord, DiffOp, DiffResult, SnapshotRow, compute_diff, load_current_state
from .errors import (
    AlreadyRolledBackError,
    ConcurrentModificationError,
    ConflictError,
    DuplicateExternalIdError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    ReconcileError,
    RollbackConflictError,
    RollbackNotEligibleError,
    SnapshotValidationError,
    StaleBaseVersionError,
    SubmissionAlreadyDecidedError,
    SubmissionValidationError,
    ValidationError,
)
from .export import EXPORT_COLUMNS, export_csv, write_export
from .manual import PersonEditService
from .moderation import ModerationDecision, ModerationService, validate_submission_payload
from .principal import SYSTEM_PRINCIPAL, Principal, Role
from .rollback import RollbackCoordinator, RollbackPlan
from .snapshot import verify_person_history
from .stats import moderation_stats, public_stats
from .transactor import ApplyResult, ReconciliationTransactor, SourceMeta

REGISTRY_EXTENSION_KEY = "registry"

__all__ = [
    "init_registry",
    "REGISTRY_EXTENSION_KEY",
    "AuditRecorder",
    "BulkUploadService",
    "ParsedSnapshot",
    "CurrentRecord",
    "DiffOp",
    "DiffResult",
    "SnapshotRow",
    "compute_diff",
    "load_current_state",
    "ErrorKind",
    "ReconcileError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "PersistenceError",
    "ForbiddenError",
    "SnapshotValidationError",
    "SubmissionValidationError",
    "RollbackNotEligibleError",
    "DuplicateExternalIdError",
    "ConcurrentModificationError",
    "StaleBaseVersionError",
    "SubmissionAlreadyDecidedError",
    "AlreadyRolledBackError",
    "RollbackConflictError",
    "EXPORT_COLUMNS",
    "export_csv",
    "write_export",
    "PersonEditService",
    "ModerationDecision",
    "ModerationService",
    "validate_submission_payload",
    "Principal",
    "Role",
    "SYSTEM_PRINCIPAL",
    "RollbackCoordinator",
    "RollbackPlan",
    "verify_person_history",
    "public_stats",
    "moderation_stats",
    "ApplyResult",
    "ReconciliationTransactor",
    "SourceMeta",
]


def init_registry(app: Flask) -> None:
    """Register registry commands and collaborators on ``app``; safe to call twice."""

    state = app.extensions.setdefault(REGISTRY_EXTENSION_KEY, {"cli_registered": False})
    init_blob_store(app)
    if not state["cli_registered"]:
        app.cli.add_command(registry_cli)
        state["cli_registered"] = True
