"""API key generation and validation helpers."""
from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.api_key import ApiKey
from app.utils.time import ensure_utc, utcnow

LEGACY = "legacy"


def hash_key(raw: str) -> str:
    """Return an HMAC-SHA256 hash for the provided API key."""

    return hmac.new(settings.SECRET_KEY.encode(), raw.encode(), hashlib.sha256).hexdigest()


def gen_key(prefix_len: int = 6) -> tuple[str, str, str]:
    """Generate a user-facing API key, its prefix, and the stored hash."""

    prefix = "rsp_" + secrets.token_hex(prefix_len)[:prefix_len]
    suffix = secrets.token_urlsafe(32)
    raw = f"{prefix}.{suffix}"
    return raw, prefix, hash_key(raw)


def find_valid_key(db: Session, raw_or_dev: str) -> Optional[ApiKey | str]:
    """Return a matching active, unexpired API key, ``"legacy"`` for the dev key, or ``None``."""

    if settings.DEV_API_KEY and secrets.compare_digest(raw_or_dev, settings.DEV_API_KEY):
        return LEGACY

    stmt = select(ApiKey).where(ApiKey.key_hash == hash_key(raw_or_dev), ApiKey.is_active.is_(True))
    key = db.scalars(stmt).first()
    if key is None:
        return None
    if key.expires_at is not None and ensure_utc(key.expires_at) <= utcnow():
        return None
    return key


__all__ = ["LEGACY", "hash_key", "gen_key", "find_valid_key"]
