"""Centralized configuration for the Parlae PMS integration service.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/parlae/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/parlae/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_env(name: str, default: str | None = None) -> str | None:
    """Return a config value from env-var or SSM, or *default*."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value
    return default


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /parlae/{name} (AWS)."
    )


# ── Sikka (system-level app credentials) ────────────────────────────
SIKKA_APP_ID: str = _require_env("SIKKA_APP_ID")
SIKKA_APP_KEY: str = _require_env("SIKKA_APP_KEY")
SIKKA_BASE_URL: str = os.getenv("SIKKA_BASE_URL", "https://api.sikkasoft.com/v4")

# Practice-level credentials; usually discovered via /authorized_practices
SIKKA_OFFICE_ID: str | None = _optional_env("SIKKA_OFFICE_ID")
SIKKA_SECRET_KEY: str | None = _optional_env("SIKKA_SECRET_KEY")

# ── PMS integration ─────────────────────────────────────────────────
PMS_INTEGRATION_ID: str = os.getenv("PMS_INTEGRATION_ID", "default")
PMS_ACCOUNT_ID: str = os.getenv("PMS_ACCOUNT_ID", "default")
DEFAULT_APPOINTMENT_DURATION: int = int(os.getenv("DEFAULT_APPOINTMENT_DURATION", "30"))

# ── Writebacks ──────────────────────────────────────────────────────
WRITEBACK_POLL_INTERVAL_SECONDS: float = float(
    os.getenv("WRITEBACK_POLL_INTERVAL_SECONDS", "2"),
)
WRITEBACK_MAX_ATTEMPTS: int = int(os.getenv("WRITEBACK_MAX_ATTEMPTS", "10"))

# ── Persistence (unset → in-memory stores, lost on restart) ─────────
DATABASE_URL: str | None = _optional_env("DATABASE_URL")

# ── Server ──────────────────────────────────────────────────────────
CRON_SECRET: str | None = _optional_env("CRON_SECRET")
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
