"""
Application configuration.
This module defines the configuration settings for the Flask application, including database connection, secret key,
logging and outbound mail settings. It uses environment variables for sensitive information and defaults for
development. In production, make sure to set the appropriate environment variables and secure the secret key.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Base configuration shared by all environments."""

    # IMPORTANT: change this in production
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me-please")

    # Database: SQLite for development (simple file in project folder)
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        f"sqlite:///{BASE_DIR / 'procurement.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CSRF protection; JSON clients send the token in X-CSRFToken
    WTF_CSRF_ENABLED = True

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_JSON = os.environ.get("LOG_JSON", "").lower() in {"1", "true", "yes"}

    # Outbound mail (provider settings themselves live in the database)
    SMTP_TIMEOUT = int(os.environ.get("SMTP_TIMEOUT", "15"))

    # Used when no organization settings row exists yet
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

    APP_NAME = "Procurement Suite"


class TestingConfig(Config):
    """In-memory database, no CSRF, quiet logs."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WTF_CSRF_ENABLED = False
    LOG_LEVEL = "WARNING"
    SMTP_TIMEOUT = 1
