# registry_app/routes/moderation.py

"""
Moderator endpoints for the community submission queue.
"""

from flask import Blueprint, current_app, jsonify, request

from registry_app.models import SubmissionStatus
from registry_app.reconcile.errors import ValidationError
from registry_app.reconcile.moderation import ModerationService
from registry_app.reconcile.stats import moderation_stats
from registry_app.services import get_blob_store
from registry_app.utils.identity import current_principal, request_context, role_required

from .common import json_body, paginated, pagination_args, parse_flag

moderation_blueprint = Blueprint("registry_moderation", __name__, url_prefix="/api/moderation")


def _service() -> ModerationService:
    return ModerationService(blob_store=get_blob_store(current_app))


@moderation_blueprint.get("/submissions")
@role_required("moderator")
def list_submissions():
    raw_status = (request.args.get("status") or SubmissionStatus.PENDING.value).strip().upper()
    status = None
    if raw_status != "ALL":
        try:
            status = SubmissionStatus(raw_status)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown status '{raw_status}'.",
                allowed=[item.value for item in SubmissionStatus] + ["ALL"],
            ) from exc
    page, per_page = pagination_args()
    submissions, total = _service().list_submissions(
        status=status,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return jsonify(paginated([item.to_dict() for item in submissions], total, page, per_page))


@moderation_blueprint.post("/submissions/<int:submission_id>/approve")
@role_required("moderator")
def approve_submission(submission_id: int):
    payload = json_body()
    decision = _service().approve(
        submission_id,
        current_principal(),
        note=payload.get("note"),
        rebase=parse_flag(payload.get("rebase", False)),
        **request_context(),
    )
    return jsonify(decision.to_dict())


@moderation_blueprint.post("/submissions/<int:submission_id>/reject")
@role_required("moderator")
def reject_submission(submission_id: int):
    payload = json_body()
    decision = _service().reject(
        submission_id,
        current_principal(),
        note=payload.get("note"),
        **request_context(),
    )
    return jsonify(decision.to_dict())


@moderation_blueprint.get("/stats")
@role_required("moderator")
def stats():
    return jsonify(moderation_stats(recent_days=int(current_app.config.get("REGISTRY_RECENT_DAYS", 7))))


def register_moderation_routes(app):
    if moderation_blueprint.name not in app.blueprints:
        app.register_blueprint(moderation_blueprint)
