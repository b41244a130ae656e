# registry_app/routes/__init__.py
"""
Application routes package
"""

from .admin import register_admin_routes
from .community import register_community_routes
from .moderation import register_moderation_routes
from .public import register_public_routes


def init_routes(app):
    """Initialize all application routes"""
    register_public_routes(app)
    register_community_routes(app)
    register_moderation_routes(app)
    register_admin_routes(app)
