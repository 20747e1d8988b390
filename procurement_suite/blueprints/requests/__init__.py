"""Procurement requests blueprint package."""

from .routes import requests_bp  # noqa: F401
