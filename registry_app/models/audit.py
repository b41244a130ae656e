"""
Append-only audit trail of privileged actions.
"""

from __future__ import annotations

import enum

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db
from .guards import append_only


class AuditAction(str, enum.Enum):
    BULK_UPLOAD_APPLIED = "BULK_UPLOAD_APPLIED"
    BULK_UPLOAD_SIMULATED = "BULK_UPLOAD_SIMULATED"
    BULK_UPLOAD_FAILED = "BULK_UPLOAD_FAILED"
    BULK_UPLOAD_ROLLED_BACK = "BULK_UPLOAD_ROLLED_BACK"
    COMMUNITY_SUBMISSION_CREATED = "COMMUNITY_SUBMISSION_CREATED"
    COMMUNITY_SUBMISSION_APPROVED = "COMMUNITY_SUBMISSION_APPROVED"
    COMMUNITY_SUBMISSION_REJECTED = "COMMUNITY_SUBMISSION_REJECTED"
    PERSON_MANUALLY_EDITED = "PERSON_MANUALLY_EDITED"
    PERSON_MANUALLY_DELETED = "PERSON_MANUALLY_DELETED"


class AuditResourceType(str, enum.Enum):
    BULK_UPLOAD = "BULK_UPLOAD"
    CHANGE_SOURCE = "CHANGE_SOURCE"
    COMMUNITY_SUBMISSION = "COMMUNITY_SUBMISSION"
    PERSON = "PERSON"
    SYSTEM = "SYSTEM"


@append_only
class AuditLogEntry(BaseModel):
    __tablename__ = "audit_log_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    principal_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True, index=True)
    principal_role: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction, name="audit_action_enum"), nullable=False)
    resource_type: Mapped[AuditResourceType] = mapped_column(
        Enum(AuditResourceType, name="audit_resource_type_enum"),
        nullable=False,
    )
    resource_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(db.String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    __table_args__ = (
        Index("idx_audit_action_created", "action", "created_at"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditLogEntry {self.action.value} {self.resource_type.value}:{self.resource_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "principal_id": self.principal_id,
            "principal_role": self.principal_role,
            "action": self.action.value,
            "resource_type": self.resource_type.value,
            "resource_id": self.resource_id,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
