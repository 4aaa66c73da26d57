# app/routers/apikeys.py
from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.schemas.checkout import EMAIL_PATTERN
from app.security import Actor, require_scope
from app.utils.apikey import gen_key
from app.utils.audit import log_audit
from app.utils.errors import ConflictError, NotFound
from app.utils.time import utcnow

router = APIRouter(prefix="/apikeys", tags=["apikeys"])


# ------ Schemas ------

class CreateKeyIn(BaseModel):
    """Payload for a new key; the raw value is generated server-side."""

    name: str
    scope: ApiScope
    email: str = Field(pattern=EMAIL_PATTERN)
    days_valid: int | None = 90

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, value):
        return value.strip().lower() if isinstance(value, str) else value


class ApiKeyCreateOut(BaseModel):
    """Returned once by POST /apikeys; the raw key is never shown again."""

    id: int
    name: str
    scope: ApiScope
    email: str
    key: str
    expires_at: datetime | None


class ApiKeyRead(BaseModel):
    id: int
    name: str
    scope: ApiScope
    email: str
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


def _get_key(db: Session, api_key_id: int) -> ApiKey:
    row = db.get(ApiKey, api_key_id)
    if not row:
        raise NotFound("APIKEY_NOT_FOUND", "API key not found.")
    return row


# ------ Routes ------

@router.post("", response_model=ApiKeyCreateOut, status_code=status.HTTP_201_CREATED)
def create_api_key(
    payload: CreateKeyIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
) -> ApiKeyCreateOut:
    raw, prefix, key_hash = gen_key()
    now = utcnow()
    expires_at = now + timedelta(days=payload.days_valid) if payload.days_valid else None

    row = ApiKey(
        name=payload.name,
        prefix=prefix,
        key_hash=key_hash,
        scope=payload.scope,
        email=payload.email,
        expires_at=expires_at,
        is_active=True,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("APIKEY_EXISTS", "Key name already exists.", status_code=400) from exc

    log_audit(
        db,
        actor=actor.ident,
        action="CREATE_API_KEY",
        entity="ApiKey",
        entity_id=row.id,
        data={"name": row.name, "scope": row.scope.value, "email": row.email},
    )
    db.commit()
    db.refresh(row)

    return ApiKeyCreateOut(
        id=row.id,
        name=row.name,
        scope=row.scope,
        email=row.email,
        key=raw,
        expires_at=row.expires_at,
    )


@router.get("/{api_key_id}", response_model=ApiKeyRead)
def get_apikey(
    api_key_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
) -> ApiKey:
    return _get_key(db, api_key_id)


@router.delete("/{api_key_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def revoke_apikey(
    api_key_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
) -> Response:
    row = _get_key(db, api_key_id)

    action = "REVOKE_API_KEY" if row.is_active else "REVOKE_API_KEY_NOOP"
    row.is_active = False
    log_audit(
        db,
        actor=actor.ident,
        action=action,
        entity="ApiKey",
        entity_id=api_key_id,
        data={"name": row.name},
    )
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
