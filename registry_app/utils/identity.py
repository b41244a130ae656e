# registry_app/utils/identity.py
"""
Request identity: turns the upstream identity headers into a Principal.

Authentication happens upstream; requests arrive with a principal id and role
header which are trusted verbatim.
"""

from functools import wraps
from http import HTTPStatus

from flask import current_app, jsonify, request
from flask_login import AnonymousUserMixin, LoginManager, UserMixin, current_user

from registry_app.reconcile.errors import ForbiddenError
from registry_app.reconcile.principal import Principal, Role, parse_role

DEFAULT_PRINCIPAL_HEADER = "X-Principal-Id"
DEFAULT_ROLE_HEADER = "X-Principal-Role"


class AuthenticatedPrincipal(UserMixin):
    """Flask-Login user wrapping an explicit Principal value."""

    def __init__(self, principal: Principal):
        self.principal = principal

    @property
    def id(self):
        return self.principal.id

    @property
    def role(self) -> Role:
        return self.principal.role

    def get_id(self):
        return self.principal.id


def load_principal_from_request(req):
    principal_header = current_app.config.get("REGISTRY_PRINCIPAL_HEADER") or DEFAULT_PRINCIPAL_HEADER
    role_header = current_app.config.get("REGISTRY_ROLE_HEADER") or DEFAULT_ROLE_HEADER

    principal_id = (req.headers.get(principal_header) or "").strip()
    if not principal_id:
        return None
    role = parse_role(req.headers.get(role_header))
    if role is None:
        current_app.logger.info(
            "Ignoring identity headers with unknown role",
            extra={"principal_id": principal_id, "role": req.headers.get(role_header)},
        )
        return None
    return AuthenticatedPrincipal(Principal(id=principal_id[:128], role=role))


def init_identity(app, login_manager: LoginManager) -> None:
    login_manager.anonymous_user = AnonymousUserMixin
    login_manager.request_loader(load_principal_from_request)


def current_principal():
    """Return the Principal for the current request, or ``None`` when anonymous."""
    if not current_user or not current_user.is_authenticated:
        return None
    return current_user.principal


def request_context():
    """IP address and user agent passed to audited operations."""
    return {
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    }


def role_required(*roles):
    """
    Decorator requiring the caller to satisfy at least one of ``roles``.

    Admin satisfies moderator checks; moderator and admin satisfy member checks.
    Answers 401 without identity headers and raises ForbiddenError (403) for an
    insufficient role.
    """
    required = tuple(Role(role) for role in roles)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = current_principal()
            if principal is None:
                return (
                    jsonify({"error": "Authentication required.", "kind": "unauthenticated", "details": {}}),
                    HTTPStatus.UNAUTHORIZED,
                )
            if not any(principal.satisfies(role) for role in required):
                current_app.logger.warning(
                    "Forbidden registry request",
                    extra={
                        "principal_id": principal.id,
                        "principal_role": principal.role.value,
                        "required_roles": [role.value for role in required],
                        "path": request.path,
                    },
                )
                raise ForbiddenError(
                    "You do not have permission to perform this action.",
                    required_roles=[role.value for role in required],
                )
            return f(*args, **kwargs)

        return decorated_function

    return decorator
