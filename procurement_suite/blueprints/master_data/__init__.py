"""Master data blueprint package (departments, vendors)."""

from .routes import master_data_bp  # noqa: F401
