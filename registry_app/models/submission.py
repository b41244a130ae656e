"""
Community-proposed edits awaiting moderation.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class SubmissionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CommunitySubmission(BaseModel):
    """A sparse field edit proposed against a specific person version."""

    __tablename__ = "community_submissions"

    id: Mapped[int] = mapped_column(primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("persons.id"), nullable=False, index=True)
    base_version_id: Mapped[int] = mapped_column(ForeignKey("person_versions.id"), nullable=False)
    proposed_payload: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(SubmissionStatus, name="submission_status_enum"),
        nullable=False,
        default=SubmissionStatus.PENDING,
        index=True,
    )
    submitted_by: Mapped[str] = mapped_column(db.String(128), nullable=False, index=True)
    decided_by: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    decision_note: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    approved_change_source_id: Mapped[int | None] = mapped_column(ForeignKey("change_sources.id"), nullable=True)
    applied_version_id: Mapped[int | None] = mapped_column(ForeignKey("person_versions.id"), nullable=True)
    rebased_from_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("person_versions.id"),
        nullable=True,
        comment="Original base version when the moderator approved against newer state.",
    )

    person = relationship("Person")
    base_version = relationship("PersonVersion", foreign_keys=[base_version_id])
    applied_version = relationship("PersonVersion", foreign_keys=[applied_version_id])
    approved_change_source = relationship("ChangeSource", foreign_keys=[approved_change_source_id])

    __table_args__ = (Index("idx_submissions_status_created", "status", "created_at"),)

    def __repr__(self) -> str:
        return f"<CommunitySubmission {self.id} {self.status.value}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "person_id": self.person_id,
            "base_version_id": self.base_version_id,
            "proposed_payload": dict(self.proposed_payload or {}),
            "status": self.status.value,
            "submitted_by": self.submitted_by,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decision_note": self.decision_note,
            "approved_change_source_id": self.approved_change_source_id,
            "applied_version_id": self.applied_version_id,
            "rebased_from_version_id": self.rebased_from_version_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
