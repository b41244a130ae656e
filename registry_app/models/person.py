"""
Canonical person records and their immutable version history.
"""

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .guards import append_only


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class ChangeType(str, enum.Enum):
    """Kind of change a version records."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# Fields carried by every version snapshot, in export order.
SNAPSHOT_FIELDS: tuple[str, ...] = (
    "name",
    "name_english",
    "gender",
    "date_of_birth",
    "date_of_death",
    "location_of_death_lat",
    "location_of_death_lng",
    "photo_url_original",
    "photo_url_thumb",
)

# Owned by bulk snapshots.
BULK_MANAGED_FIELDS: tuple[str, ...] = ("name", "name_english", "gender", "date_of_birth")

# Editable through community submissions.
COMMUNITY_FIELDS: tuple[str, ...] = (
    "date_of_death",
    "location_of_death_lat",
    "location_of_death_lng",
    "photo_url_thumb",
    "photo_url_original",
)


class Person(BaseModel):
    """Denormalized projection of the latest version for one individual."""

    __tablename__ = "persons"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    name_english: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    gender: Mapped[Gender | None] = mapped_column(Enum(Gender, name="gender_enum"), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    date_of_death: Mapped[date | None] = mapped_column(db.Date, nullable=True, index=True)
    location_of_death_lat: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    location_of_death_lng: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    photo_url_thumb: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    photo_url_original: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    current_version_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)

    versions = relationship(
        "PersonVersion",
        back_populates="person",
        order_by="PersonVersion.version_number",
        lazy="select",
    )

    __mapper_args__ = {
        "version_id_col": current_version_number,
        "version_id_generator": False,
    }

    __table_args__ = (
        CheckConstraint("current_version_number >= 1", name="ck_persons_version_positive"),
        Index("idx_persons_deleted_id", "is_deleted", "id"),
    )

    def __repr__(self) -> str:
        return f"<Person {self.external_id} v{self.current_version_number}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "name_english": self.name_english,
            "gender": self.gender.value if self.gender else None,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "date_of_death": self.date_of_death.isoformat() if self.date_of_death else None,
            "location_of_death_lat": self.location_of_death_lat,
            "location_of_death_lng": self.location_of_death_lng,
            "photo_url_original": self.photo_url_original,
            "photo_url_thumb": self.photo_url_thumb,
            "current_version": self.current_version_number,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def latest_version(self) -> "PersonVersion | None":
        return (
            db.session.query(PersonVersion)
            .filter(
                PersonVersion.person_id == self.id,
                PersonVersion.version_number == self.current_version_number,
            )
            .one_or_none()
        )


@append_only
class PersonVersion(BaseModel):
    """Immutable snapshot written once per applied change."""

    __tablename__ = "person_versions"

    id: Mapped[int] = mapped_column(primary_key=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("persons.id"), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    change_type: Mapped[ChangeType] = mapped_column(Enum(ChangeType, name="change_type_enum"), nullable=False)
    snapshot: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    changed_fields: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Snapshot fields that differ from the previous version.",
    )
    change_source_id: Mapped[int] = mapped_column(ForeignKey("change_sources.id"), nullable=False)

    person = relationship("Person", back_populates="versions")
    change_source = relationship("ChangeSource", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("person_id", "version_number", name="uq_person_versions_person_number"),
        CheckConstraint("version_number >= 1", name="ck_person_versions_positive"),
        Index("idx_person_versions_source", "change_source_id"),
    )

    def __repr__(self) -> str:
        return f"<PersonVersion person={self.person_id} v{self.version_number} {self.change_type.value}>"

    def to_dict(self) -> dict:
        source = self.change_source
        return {
            "id": self.id,
            "person_id": self.person_id,
            "version_number": self.version_number,
            "change_type": self.change_type.value,
            "snapshot": dict(self.snapshot or {}),
            "is_deleted": self.is_deleted,
            "changed_fields": list(self.changed_fields or []),
            "change_source_id": self.change_source_id,
            "change_source_type": source.type.value if source is not None else None,
            "principal_id": source.principal_id if source is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
