"""Budgets blueprint package (cycles, heads, allocations, overview)."""

from .routes import budgets_bp  # noqa: F401
