"""Users blueprint package (routes in routes.py)."""

from .routes import users_bp  # noqa: F401
