"""
Provenance records grouping the versions produced by one logical operation.
"""

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .guards import append_only


class ChangeSourceType(str, enum.Enum):
    BULK_UPLOAD = "BULK_UPLOAD"
    COMMUNITY_SUBMISSION = "COMMUNITY_SUBMISSION"
    ROLLBACK = "ROLLBACK"
    MANUAL = "MANUAL"


ROLLBACK_ELIGIBLE_TYPES: frozenset[ChangeSourceType] = frozenset({ChangeSourceType.BULK_UPLOAD})


@append_only
class ChangeSource(BaseModel):
    """One atomic, attributable change-batch."""

    __tablename__ = "change_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    type: Mapped[ChangeSourceType] = mapped_column(
        Enum(ChangeSourceType, name="change_source_type_enum"),
        nullable=False,
        index=True,
    )
    principal_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    principal_role: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    stats_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Counts per change type: inserted, updated, deleted.",
    )
    reverts_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_sources.id"),
        nullable=True,
        unique=True,
        comment="Set on ROLLBACK sources; unique so a batch can be reverted only once.",
    )
    forced: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    versions = relationship("PersonVersion", back_populates="change_source", order_by="PersonVersion.id")
    bulk_upload = relationship("BulkUpload", back_populates="change_source", uselist=False)
    reverts = relationship(
        "ChangeSource",
        remote_side="ChangeSource.id",
        foreign_keys="ChangeSource.reverts_source_id",
        viewonly=True,
    )
    reverted_by = relationship(
        "ChangeSource",
        foreign_keys="ChangeSource.reverts_source_id",
        uselist=False,
        viewonly=True,
    )

    __table_args__ = (Index("idx_change_sources_type_created", "type", "created_at"),)

    def __repr__(self) -> str:
        return f"<ChangeSource {self.id} {self.type.value}>"

    @property
    def stats(self) -> dict[str, int]:
        raw = self.stats_json or {}
        return {key: int(raw.get(key, 0)) for key in ("inserted", "updated", "deleted")}

    @property
    def is_rollback_eligible(self) -> bool:
        return self.type in ROLLBACK_ELIGIBLE_TYPES


@append_only
class BulkUpload(BaseModel):
    """Metadata for the CSV file behind a BULK_UPLOAD change source."""

    __tablename__ = "bulk_uploads"

    id: Mapped[int] = mapped_column(primary_key=True)
    change_source_id: Mapped[int] = mapped_column(ForeignKey("change_sources.id"), nullable=False, unique=True)
    filename: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_url: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    file_size: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    file_sha256: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    content_type: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    comment: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    date_released: Mapped[date | None] = mapped_column(db.Date, nullable=True)

    change_source = relationship("ChangeSource", back_populates="bulk_upload")

    def __repr__(self) -> str:
        return f"<BulkUpload {self.filename}>"
