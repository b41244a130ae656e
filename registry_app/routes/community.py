# registry_app/routes/community.py

"""
Member endpoints: proposing edits and uploading photos.
"""

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from registry_app.models import db
from registry_app.reconcile.errors import ValidationError
from registry_app.reconcile.moderation import ModerationService
from registry_app.services import get_blob_store
from registry_app.utils.identity import current_principal, request_context, role_required

from .common import json_body, paginated, pagination_args, read_upload

community_blueprint = Blueprint("registry_community", __name__, url_prefix="/api")

PHOTO_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp"})


@community_blueprint.post("/submissions")
@role_required("member")
def create_submission():
    payload = json_body()
    person_id = payload.get("person_id")
    if isinstance(person_id, bool) or not isinstance(person_id, int):
        raise ValidationError("'person_id' must be an integer.")

    principal = current_principal()
    service = ModerationService()
    try:
        submission = service.create_submission(
            person_id,
            payload.get("payload"),
            principal,
            **request_context(),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "Community submission created",
        extra={"submission_id": submission.id, "person_id": person_id, "principal_id": principal.id},
    )
    return jsonify(submission.to_dict()), HTTPStatus.CREATED


@community_blueprint.get("/submissions/mine")
@role_required("member")
def my_submissions():
    page, per_page = pagination_args()
    submissions, total = ModerationService().list_submissions(
        submitted_by=current_principal().id,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    return jsonify(paginated([item.to_dict() for item in submissions], total, page, per_page))


@community_blueprint.post("/uploads/photo")
@role_required("member")
def upload_photo():
    file_storage = request.files.get("file")
    data = read_upload(file_storage, PHOTO_EXTENSIONS)
    stored = get_blob_store(current_app).store(
        data,
        filename=file_storage.filename,
        content_type=file_storage.mimetype,
    )
    current_app.logger.info(
        "Photo uploaded",
        extra={"principal_id": current_principal().id, "blob_url": stored.url, "size": stored.size},
    )
    return (
        jsonify(
            {
                "url": stored.url,
                "sha256": stored.sha256,
                "size": stored.size,
                "content_type": stored.content_type,
            }
        ),
        HTTPStatus.CREATED,
    )


def register_community_routes(app):
    if community_blueprint.name not in app.blueprints:
        app.register_blueprint(community_blueprint)
