# app/security.py
"""Bearer-key authentication stub resolving requests to an explicit actor."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Set

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.config import DEV_API_KEY, DEV_API_KEY_ALLOWED, ENV, get_settings
from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.utils.apikey import LEGACY, find_valid_key
from app.utils.audit import log_audit
from app.utils.errors import AuthzError
from app.utils.time import utcnow


@dataclass(frozen=True)
class Actor:
    """Authenticated caller passed explicitly into every core operation."""

    email: str
    role: ApiScope
    ident: str

    @property
    def is_admin(self) -> bool:
        return self.role == ApiScope.admin

    def owns(self, email: str | None) -> bool:
        return bool(email) and self.email.lower() == email.lower()


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _unauthorized(code: str, message: str) -> AuthzError:
    return AuthzError(code, message, status_code=401)


def require_actor(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_key),
) -> Actor:
    """Validate the bearer key and return the actor it identifies."""
    if not token:
        raise _unauthorized("NO_API_KEY", "API key required.")

    key = find_valid_key(db, token)
    if key == LEGACY:
        if not DEV_API_KEY_ALLOWED:
            raise _unauthorized("LEGACY_KEY_FORBIDDEN", "Legacy dev key disabled.")
        log_audit(
            db,
            actor="legacy-apikey",
            action="LEGACY_API_KEY_USED",
            entity="ApiKey",
            entity_id=0,
            data={"env": ENV},
        )
        db.commit()
        return Actor(email=get_settings().DEV_ADMIN_EMAIL, role=ApiScope.admin, ident="apikey:legacy")

    if not isinstance(key, ApiKey):
        raise _unauthorized("UNAUTHORIZED", "Invalid or expired API key")

    key.last_used_at = utcnow()
    db.add(key)
    db.commit()
    return Actor(email=key.email.lower(), role=key.scope, ident=f"apikey:{key.prefix}")


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Enforce that the caller holds one of the allowed scopes (admin always passes)."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(actor: Actor = Depends(require_actor)) -> Actor:
        if actor.is_admin or actor.role in allowed:
            return actor
        raise AuthzError(
            "INSUFFICIENT_SCOPE",
            f"Requires one of: {sorted(scope.value for scope in allowed)}",
        )

    return _dep


__all__ = ["Actor", "DEV_API_KEY", "require_actor", "require_scope"]
