"""RFPs blueprint package."""

from .routes import rfps_bp  # noqa: F401
