# registry_app/routes/admin.py

"""
Administrator endpoints: bulk uploads, rollbacks, manual edits and the audit log.
"""

from datetime import date
from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from registry_app.models import AuditAction, AuditResourceType
from registry_app.reconcile.audit import AuditRecorder
from registry_app.reconcile.bulk import BulkUploadService
from registry_app.reconcile.errors import ValidationError
from registry_app.reconcile.manual import PersonEditService
from registry_app.reconcile.rollback import RollbackCoordinator
from registry_app.services import get_blob_store
from registry_app.utils.identity import current_principal, request_context, role_required

from .common import json_body, paginated, pagination_args, parse_flag, read_upload

admin_blueprint = Blueprint("registry_admin", __name__, url_prefix="/api/admin")

SNAPSHOT_EXTENSIONS = frozenset({"csv"})


def _parse_enum(enum_cls, raw, name):
    if not raw:
        return None
    try:
        return enum_cls(raw.strip().upper())
    except ValueError as exc:
        raise ValidationError(
            f"Unknown {name} '{raw}'.",
            allowed=[item.value for item in enum_cls],
        ) from exc


def _parse_date_released(raw):
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise ValidationError("'date_released' must be a YYYY-MM-DD date.", date_released=raw) from exc


def _expected_version(payload):
    raw = payload.get("expected_version", request.args.get("expected_version"))
    if raw is None:
        raise ValidationError("'expected_version' is required.")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("'expected_version' must be an integer.") from exc


@admin_blueprint.post("/bulk-uploads/simulate")
@role_required("admin")
def simulate_bulk_upload():
    file_storage = request.files.get("file")
    data = read_upload(file_storage, SNAPSHOT_EXTENSIONS)
    summary = BulkUploadService().simulate(
        data,
        current_principal(),
        filename=file_storage.filename,
        **request_context(),
    )
    return jsonify(summary)


@admin_blueprint.post("/bulk-uploads")
@role_required("admin")
def apply_bulk_upload():
    file_storage = request.files.get("file")
    data = read_upload(file_storage, SNAPSHOT_EXTENSIONS)
    comment = (request.form.get("comment") or "").strip() or None
    date_released = _parse_date_released(request.form.get("date_released"))

    principal = current_principal()
    service = BulkUploadService(blob_store=get_blob_store(current_app))
    result = service.apply(
        data,
        principal,
        filename=file_storage.filename,
        content_type=file_storage.mimetype,
        comment=comment,
        date_released=date_released,
        **request_context(),
    )
    current_app.logger.info(
        "Bulk upload applied from admin API",
        extra={"change_source_id": result.change_source_id, "principal_id": principal.id, **result.stats},
    )
    return jsonify(result.to_dict()), HTTPStatus.CREATED


@admin_blueprint.get("/bulk-uploads")
@role_required("admin")
def list_bulk_uploads():
    page, per_page = pagination_args()
    items, total = BulkUploadService().list_uploads(limit=per_page, offset=(page - 1) * per_page)
    return jsonify(paginated(items, total, page, per_page))


@admin_blueprint.post("/change-sources/<int:change_source_id>/rollback")
@role_required("admin")
def rollback_change_source(change_source_id: int):
    payload = json_body()
    result = RollbackCoordinator().rollback(
        change_source_id,
        current_principal(),
        force=parse_flag(payload.get("force", False)),
        **request_context(),
    )
    return jsonify(result.to_dict()), HTTPStatus.CREATED


@admin_blueprint.patch("/persons/<int:person_id>")
@role_required("admin")
def edit_person(person_id: int):
    payload = json_body()
    result = PersonEditService().edit(
        person_id,
        payload.get("fields"),
        current_principal(),
        expected_version=_expected_version(payload),
        **request_context(),
    )
    return jsonify(result.to_dict())


@admin_blueprint.delete("/persons/<int:person_id>")
@role_required("admin")
def delete_person(person_id: int):
    payload = json_body()
    result = PersonEditService().delete(
        person_id,
        current_principal(),
        expected_version=_expected_version(payload),
        **request_context(),
    )
    return jsonify(result.to_dict())


@admin_blueprint.get("/audit-log")
@role_required("admin")
def audit_log():
    page, per_page = pagination_args()
    entries, total = AuditRecorder().list_entries(
        action=_parse_enum(AuditAction, request.args.get("action"), "action"),
        resource_type=_parse_enum(AuditResourceType, request.args.get("resource_type"), "resource_type"),
        resource_id=request.args.get("resource_id") or None,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return jsonify(paginated([entry.to_dict() for entry in entries], total, page, per_page))


def register_admin_routes(app):
    if admin_blueprint.name not in app.blueprints:
        app.register_blueprint(admin_blueprint)
