"""
Bulk snapshot uploads: parse, diff, then simulate or apply.

Shared by the admin routes and the ``flask registry`` commands.
"""

from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from registry_app.models import AuditAction, AuditResourceType, BulkUpload, ChangeSource, ChangeSourceType, db

from .adapters import SnapshotCSVAdapter
from .audit import AuditRecorder
from .diff import DiffResult, compute_diff, load_current_state
from .errors import ReconcileError, ValidationError
from .principal import Principal
from .transactor import ApplyResult, ReconciliationTransactor, SourceMeta

logger = logging.getLogger(__name__)


@dataclass
class ParsedSnapshot:
    filename: str
    size: int
    sha256: str
    diff: DiffResult


def _config(key: str, default: Any) -> Any:
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def decode_snapshot(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError(f"Snapshot is not valid UTF-8: {exc.reason} at byte {exc.start}.") from exc


class BulkUploadService:
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

    def parse(self, data: bytes, filename: str | None = None) -> ParsedSnapshot:
        """
        Validate ``data`` as a snapshot CSV and diff it against the current registry.

        Raises:
            ValidationError: undecodable bytes, bad headers or malformed rows.
            DuplicateExternalIdError: an external id appears more than once.
        """

        adapter = SnapshotCSVAdapter(
            io.StringIO(decode_snapshot(data), newline=""),
            max_rows=int(_config("REGISTRY_MAX_BATCH_ROWS", 10000)),
            max_reported_errors=int(_config("REGISTRY_MAX_REPORTED_ERRORS", 50)),
        )
        rows = adapter.read_snapshot()
        diff = compute_diff(load_current_state(self.session), rows, fields=adapter.managed_fields)
        return ParsedSnapshot(
            filename=filename or "snapshot.csv",
            size=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            diff=diff,
        )

    def simulate(
        self,
        data: bytes,
        principal: Principal,
        *,
        filename: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Dry run; only the BULK_UPLOAD_SIMULATED audit entry is committed."""

        parsed = self.parse(data, filename)
        summary = self.transactor.simulate(parsed.diff)
        self.audit.record(
            principal,
            AuditAction.BULK_UPLOAD_SIMULATED,
            AuditResourceType.BULK_UPLOAD,
            None,
            {
                "filename": parsed.filename,
                "file_size": parsed.size,
                "file_sha256": parsed.sha256,
                **parsed.diff.counts,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.session.commit()
        return {"filename": parsed.filename, "file_sha256": parsed.sha256, **summary}

    def apply(
        self,
        data: bytes,
        principal: Principal,
        *,
        filename: str | None = None,
        content_type: str | None = None,
        comment: str | None = None,
        date_released: date | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ApplyResult:
        parsed = self.parse(data, filename)
        file_url = None
        if self.blob_store is not None:
            stored = self.blob_store.store(data, filename=parsed.filename, content_type=content_type)
            file_url = stored.url

        meta = SourceMeta(
            source_type=ChangeSourceType.BULK_UPLOAD,
            description=comment or f"Bulk upload {parsed.filename}",
            filename=parsed.filename,
            file_url=file_url,
            file_size=parsed.size,
            file_sha256=parsed.sha256,
            content_type=content_type,
            comment=comment,
            date_released=date_released,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            return self.transactor.apply(parsed.diff, meta, principal)
        except ReconcileError:
            if file_url is not None:
                logger.info("Discarding stored snapshot after failed apply", extra={"file_url": file_url})
                self.blob_store.delete([file_url])
            raise

    def list_uploads(self, *, limit: int = 50, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
        """Uploads newest first, each with its stats and rollback status."""

        query = self.session.query(ChangeSource).join(BulkUpload, BulkUpload.change_source_id == ChangeSource.id)
        total = query.count()
        sources = query.order_by(ChangeSource.id.desc()).offset(offset).limit(limit).all()
        items = []
        for source in sources:
            upload = source.bulk_upload
            rollback = source.reverted_by
            items.append(
                {
                    "change_source_id": source.id,
                    "principal_id": source.principal_id,
                    "filename": upload.filename,
                    "file_url": upload.file_url,
                    "file_size": upload.file_size,
                    "file_sha256": upload.file_sha256,
                    "comment": upload.comment,
                    "date_released": upload.date_released.isoformat() if upload.date_released else None,
                    "stats": source.stats,
                    "created_at": source.created_at.isoformat() if source.created_at else None,
                    "rolled_back": rollback is not None,
                    "rollback_source_id": rollback.id if rollback is not None else None,
                }
            )
        return items, total
