"""Centralized configuration for the Prestrack WhatsApp agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/prestrack/<VARIABLE_NAME>``.
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
        import boto3  # noqa: PLC0415 - lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/prestrack/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_env(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /prestrack/{name} (AWS)."
    )


def _optional_env(name: str, default: str | None = None) -> str | None:
    """Return a config value from env-var or SSM, falling back to *default*."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value
    return default


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
# Provider technical mode (quote-only answers over clinical sources)
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-opus-4-6")
# Patient / visitor action decisions
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")

# ── Vector search (Geneline-X) ───────────────────────────────────────
GENELINE_BASE_URL: str = os.getenv("GENELINE_BASE_URL", "https://message.geneline-x.net")
GENELINE_X_API_KEY: str | None = _optional_env("GENELINE_X_API_KEY")
GENELINE_X_NAMESPACE: str = os.getenv("GENELINE_X_NAMESPACE", "default")
GENELINE_X_INDEX: str | None = os.getenv("GENELINE_X_INDEX") or None
RAG_DEFAULT_TOPK: int = int(os.getenv("RAG_DEFAULT_TOPK", "5"))

# ── WhatsApp gateway ────────────────────────────────────────────────
WHATSAPP_GATEWAY_URL: str = os.getenv("WHATSAPP_GATEWAY_URL", "https://hoa-client.onrender.com")
WHATSAPP_LID: str | None = os.getenv("WHATSAPP_LID") or None

# ── Google Calendar (Meet links) ────────────────────────────────────
GCS_CREDENTIALS_JSON: str | None = _optional_env("GCS_CREDENTIALS_JSON")
GOOGLE_CALENDAR_ID: str = os.getenv("GOOGLE_CALENDAR_ID", "primary")

# ── Clinic ──────────────────────────────────────────────────────────
# "Local" time for parsing phrases like "tomorrow at 3pm"
CLINIC_TIMEZONE: str = os.getenv("CLINIC_TIMEZONE", "Africa/Freetown")

# ── Storage / workflow housekeeping ─────────────────────────────────
DATABASE_PATH: str = os.getenv("DATABASE_PATH", "data/prestrack.db")
SWEEPER_INTERVAL_SECONDS: int = int(os.getenv("SWEEPER_INTERVAL_SECONDS", "60"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000",
).split(",")
