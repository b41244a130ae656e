"""
Audit recorder writing append-only entries inside the caller's unit of work.
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from registry_app.models import AuditAction, AuditLogEntry, AuditResourceType, db

from .principal import Principal


class AuditRecorder:
    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def record(
        self,
        principal: Principal | None,
        action: AuditAction,
        resource_type: AuditResourceType,
        resource_id: Any = None,
        details: Mapping[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLogEntry:
        """
        Add an audit entry to the session.

        The entry is flushed but not committed, so it succeeds or fails together
        with the operation it describes.
        """

        entry = AuditLogEntry(
            principal_id=principal.id if principal else None,
            principal_role=principal.role.value if principal else None,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_entries(
        self,
        *,
        action: AuditAction | None = None,
        resource_type: AuditResourceType | None = None,
        resource_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        query = self.session.query(AuditLogEntry)
        if action is not None:
            query = query.filter(AuditLogEntry.action == action)
        if resource_type is not None:
            query = query.filter(AuditLogEntry.resource_type == resource_type)
        if resource_id is not None:
            query = query.filter(AuditLogEntry.resource_id == str(resource_id))
        total = query.count()
        entries = query.order_by(AuditLogEntry.id.desc()).offset(offset).limit(limit).all()
        return entries, total
