"""
Central configuration: defaults for the marketplace and the web app.

Every key can be overridden with a ``PETCARE_<KEY>`` environment variable.
Values are read by Flask's ``Config.from_prefixed_env``, which parses them as
JSON when it can, so ``PETCARE_INVOICE_DUE_DAYS=30`` arrives as an int and
``PETCARE_INVOICE_AUTO_SEND=false`` as a bool.
"""

from __future__ import annotations

import os
from typing import Any, Mapping

from flask import Config

ENV_PREFIX = "PETCARE"

DEFAULTS: dict[str, Any] = {
    # sqlite file used by the web app; tests use ":memory:"
    "DATABASE_PATH": "petcare.db",
    "SECRET_KEY": "petcare-dev-secret",
    "LOG_LEVEL": "INFO",
    # billing
    "INVOICE_DUE_DAYS": 15,
    "INVOICE_AUTO_SEND": True,
    # booking rules
    "BOOKING_MIN_LEAD_MINUTES": 60,
    "MAX_PENDING_BOOKINGS": 5,
    # outbound email
    "EMAIL_SENDER": "billing@petcare.example",
    "PLATFORM_NAME": "Petcare",
}


def configure(config: Config, overrides: Mapping[str, Any] | None = None) -> Config:
    """Layer defaults, then ``PETCARE_*`` environment variables, then ``overrides``."""

    config.from_mapping(DEFAULTS)
    config.from_prefixed_env(ENV_PREFIX)
    if overrides:
        config.from_mapping(overrides)
    return config


def load_settings(overrides: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Settings for code running outside an application context."""

    config = configure(Config(os.getcwd()), overrides)
    return dict(config)
