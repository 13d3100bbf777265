"""HTTP route definitions for the account service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic.alias_generators import to_camel

from ..domain.contracts import AccountSummary, AuditPage, AuthResult, DeletionReceipt, RegisterInput
from ..domain.errors import Err, Messages
from ..domain.service import AccountService
from ..validation import (
    Alphanumeric,
    EmailFormat,
    FieldRules,
    LengthBounds,
    PasswordRule,
    Required,
    Schema,
    TypeRule,
)
from .dependencies import authorize_request, check_auth_rate_limit, gate_body, get_service
from .envelope import failure, success

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

NAME_RULES = (TypeRule("string"), LengthBounds(min=2, max=50), Alphanumeric(allow_spaces=True))

REGISTER_SCHEMA = Schema(
    required=("email", "name", "password"),
    fields={
        "email": FieldRules((Required(), TypeRule("string"), EmailFormat(), LengthBounds(min=5, max=255))),
        "name": FieldRules((Required(), *NAME_RULES)),
        "password": FieldRules(
            (
                Required(),
                TypeRule("string"),
                PasswordRule(min_length=8, require_uppercase=True, require_lowercase=True, require_digit=True),
            )
        ),
    },
)

LOGIN_SCHEMA = Schema(
    required=("email", "password"),
    fields={
        "email": FieldRules((Required(), TypeRule("string"), EmailFormat())),
        "password": FieldRules((Required(), TypeRule("string"), LengthBounds(min=1))),
    },
)

UPDATE_PROFILE_SCHEMA = Schema(fields={"name": FieldRules(NAME_RULES)})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AccountResponse(_CamelModel):
    """Serialised representation of an `Account` summary."""

    id: str
    email: EmailStr
    name: str
    is_active: bool
    is_updated: bool
    created_at: datetime
    last_login: datetime | None = None
    last_updated_at: datetime | None = None

    @classmethod
    def from_domain(cls, account: AccountSummary) -> "AccountResponse":
        """Build a response model from the domain summary."""
        return cls(
            id=account.account_id,
            email=account.email,
            name=account.name,
            is_active=account.is_active,
            is_updated=account.is_updated,
            created_at=account.created_at,
            last_login=account.last_login_at,
            last_updated_at=account.last_updated_at,
        )


class AuthResponse(_CamelModel):
    """Token issuance response containing the account and the bearer token pair."""

    account: AccountResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int

    @classmethod
    def from_domain(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            account=AccountResponse.from_domain(result.account),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.access_expires_in,
            refresh_expires_in=result.tokens.refresh_expires_in,
        )


class DeletionResponse(_CamelModel):
    id: str
    email: EmailStr
    name: str
    deleted_at: datetime

    @classmethod
    def from_domain(cls, receipt: DeletionReceipt) -> "DeletionResponse":
        return cls(id=receipt.account_id, email=receipt.email, name=receipt.name, deleted_at=receipt.deleted_at)


class AuditLogEntry(_CamelModel):
    """Audit log response entry."""

    audit_id: int
    event_type: str
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(_CamelModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None

    @classmethod
    def from_domain(cls, page: AuditPage) -> "AuditLogResponse":
        return cls(
            items=[
                AuditLogEntry(
                    audit_id=record.audit_id,
                    event_type=record.event_type,
                    metadata=record.metadata,
                    created_at=record.created_at,
                )
                for record in page.items
            ],
            next_cursor=page.next_cursor,
        )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: Request, service: AccountService = Depends(get_service)) -> JSONResponse:
    """Open an account and return it with its first token pair."""
    limited = await check_auth_rate_limit(request)
    if isinstance(limited, Err):
        return failure(limited.error)
    gated = await gate_body(request, REGISTER_SCHEMA)
    if isinstance(gated, Err):
        return failure(gated.error)

    payload = gated.value
    logger.info("registration request for %s", payload["email"])
    result = await service.register(
        RegisterInput(email=payload["email"], name=payload["name"], password=payload["password"])
    )
    if isinstance(result, Err):
        return failure(result.error)
    return success(AuthResponse.from_domain(result.value), Messages.USER_CREATED, status.HTTP_201_CREATED)


@router.post("/login")
async def login(request: Request, service: AccountService = Depends(get_service)) -> JSONResponse:
    """Exchange credentials for a fresh token pair, revoking the previous one."""
    limited = await check_auth_rate_limit(request)
    if isinstance(limited, Err):
        return failure(limited.error)
    gated = await gate_body(request, LOGIN_SCHEMA)
    if isinstance(gated, Err):
        return failure(gated.error)

    payload = gated.value
    result = await service.authenticate(payload["email"], payload["password"])
    if isinstance(result, Err):
        return failure(result.error)
    return success(AuthResponse.from_domain(result.value), Messages.LOGIN_SUCCESS)


@router.get("/profile")
async def get_profile(request: Request, service: AccountService = Depends(get_service)) -> JSONResponse:
    identity = await authorize_request(request, service)
    if isinstance(identity, Err):
        return failure(identity.error)
    result = await service.get_by_id(identity.value.account_id)
    if isinstance(result, Err):
        return failure(result.error)
    return success(AccountResponse.from_domain(result.value), Messages.PROFILE_RETRIEVED)


@router.put("/profile")
async def update_profile(request: Request, service: AccountService = Depends(get_service)) -> JSONResponse:
    identity = await authorize_request(request, service)
    if isinstance(identity, Err):
        return failure(identity.error)
    gated = await gate_body(request, UPDATE_PROFILE_SCHEMA)
    if isinstance(gated, Err):
        return failure(gated.error)

    result = await service.update_profile(identity.value.account_id, gated.value)
    if isinstance(result, Err):
        return failure(result.error)
    return success(AccountResponse.from_domain(result.value), Messages.USER_UPDATED)


@router.post("/logout")
async def logout(request: Request, service: AccountService = Depends(get_service)) -> JSONResponse:
    identity = await authorize_request(request, service)
    if isinstance(identity, Err):
        return failure(identity.error)
    result = await service.logout(identity.value.account_id)
    if isinstance(result, Err):
        return failure(result.error)
    return success(message=Messages.LOGOUT_SUCCESS)


@router.delete("/account")
async def delete_account(request: Request, service: AccountService = Depends(get_service)) -> JSONResponse:
    """Soft delete the caller's account; the record is kept but can never sign in again."""
    identity = await authorize_request(request, service)
    if isinstance(identity, Err):
        return failure(identity.error)
    result = await service.soft_delete(identity.value.account_id)
    if isinstance(result, Err):
        return failure(result.error)
    return success(DeletionResponse.from_domain(result.value), Messages.USER_DELETED)


@router.get("/audit")
async def list_audit_events(
    request: Request,
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    service: AccountService = Depends(get_service),
) -> JSONResponse:
    """Return the caller's own audit events with cursor pagination."""
    identity = await authorize_request(request, service)
    if isinstance(identity, Err):
        return failure(identity.error)
    result = await service.list_audit_events(identity.value.account_id, limit=limit, cursor=cursor)
    if isinstance(result, Err):
        return failure(result.error)
    return success(AuditLogResponse.from_domain(result.value), Messages.AUDIT_RETRIEVED)
