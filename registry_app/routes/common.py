# registry_app/routes/common.py
"""
Request parsing helpers shared by the registry blueprints.
"""

from __future__ import annotations

from typing import Any

from flask import current_app, request

from registry_app.reconcile.errors import ValidationError


def pagination_args() -> tuple[int, int]:
    """Return ``(page, per_page)`` from the query string, bounded by config."""

    default_size = int(current_app.config.get("REGISTRY_PAGE_SIZE_DEFAULT", 50))
    max_size = int(current_app.config.get("REGISTRY_PAGE_SIZE_MAX", 500))
    try:
        page = int(request.args.get("page", 1))
        per_page = int(request.args.get("per_page", default_size))
    except (TypeError, ValueError) as exc:
        raise ValidationError("Query parameters 'page' and 'per_page' must be integers.") from exc
    if page < 1 or per_page < 1:
        raise ValidationError("Query parameters 'page' and 'per_page' must be positive.")
    return page, min(per_page, max_size)


def paginated(items: list[Any], total: int, page: int, per_page: int) -> dict[str, Any]:
    return {
        "items": items,
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page if per_page else 0,
    }


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def max_upload_bytes() -> int:
    mb_limit = current_app.config.get("REGISTRY_MAX_UPLOAD_MB", 25)
    try:
        return int(mb_limit) * 1024 * 1024
    except (TypeError, ValueError):
        return 25 * 1024 * 1024


def read_upload(file_storage, allowed_extensions: frozenset[str]) -> bytes:
    """
    Read an uploaded file after checking its name and size.

    Raises:
        ValidationError: missing file, unsupported extension or size over the limit.
    """

    if file_storage is None or not file_storage.filename:
        raise ValidationError("No file uploaded.")
    extension = file_storage.filename.rsplit(".", 1)[-1].lower() if "." in file_storage.filename else ""
    if extension not in allowed_extensions:
        raise ValidationError(
            f"Unsupported file type '{extension or 'none'}'.",
            allowed=sorted(allowed_extensions),
        )
    max_bytes = max_upload_bytes()
    data = file_storage.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ValidationError("Upload exceeds maximum size limit.", max_bytes=max_bytes)
    if not data:
        raise ValidationError("Uploaded file is empty.")
    return data
