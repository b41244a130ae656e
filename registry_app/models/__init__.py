# registry_app/models/__init__.py
"""
Database models package
"""

from .audit import AuditAction, AuditLogEntry, AuditResourceType
from .base import BaseModel, db
from .change_source import ROLLBACK_ELIGIBLE_TYPES, BulkUpload, ChangeSource, ChangeSourceType
from .guards import ImmutableRecordError
from .person import (
    BULK_MANAGED_FIELDS,
    COMMUNITY_FIELDS,
    SNAPSHOT_FIELDS,
    ChangeType,
    Gender,
    Person,
    PersonVersion,
)
from .submission import CommunitySubmission, SubmissionStatus

__all__ = [
    "db",
    "BaseModel",
    "ImmutableRecordError",
    # Version store
    "Person",
    "PersonVersion",
    "ChangeType",
    "Gender",
    "SNAPSHOT_FIELDS",
    "BULK_MANAGED_FIELDS",
    "COMMUNITY_FIELDS",
    "ChangeSource",
    "ChangeSourceType",
    "BulkUpload",
    "ROLLBACK_ELIGIBLE_TYPES",
    # Moderation
    "CommunitySubmission",
    "SubmissionStatus",
    # Audit
    "AuditLogEntry",
    "AuditAction",
    "AuditResourceType",
]
