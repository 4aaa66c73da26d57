"""Health check endpoint."""
from __future__ import annotations

import hashlib
import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.db import get_engine

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except SQLAlchemyError:
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config("alembic.ini"))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    except SQLAlchemyError:
        logger.exception("Migration check failed")
        return False, "unknown"
    if expected_head is None:
        return False, "unknown"
    if current == expected_head:
        return True, "up_to_date"
    return False, "out_of_date"


def _fingerprint(value: str | None) -> str | None:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    """Report database, migration and processor configuration status."""

    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    return {
        "status": "ok" if db_ok and migration_ok else "degraded",
        "env": settings.app_env,
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "stripe": {
            "enabled": bool(settings.STRIPE_ENABLED),
            "api_key_configured": bool(settings.STRIPE_SECRET_KEY),
            "webhook_configured": bool(settings.STRIPE_WEBHOOK_SECRET),
            "webhook_secret_fingerprint": _fingerprint(settings.STRIPE_WEBHOOK_SECRET),
        },
        "settlement_currency": settings.SETTLEMENT_CURRENCY,
        "booking_service_url": settings.BOOKING_SERVICE_URL,
        "refund_policy_window_days": settings.REFUND_POLICY_WINDOW_DAYS,
    }
