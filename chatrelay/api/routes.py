from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from chatrelay.api.schemas import (
    ChatRequest,
    ChatResponse,
    CredentialResponse,
    Envelope,
    LoginRequest,
    RegisterRequest,
    UserListResponse,
    UserResponse,
)
from chatrelay.logging import get_correlation_id, get_logger
from chatrelay.service.auth import AuthContext, Credential
from chatrelay.service.errors import StoreError
from chatrelay.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _credential_response(credential: Credential) -> CredentialResponse:
    return CredentialResponse(
        token=credential.access_token,
        token_type=credential.token_type,
        expires_at=credential.expires_at,
        user_id=credential.user_id,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return runtime.auth.authenticate(authorization)


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an account in the primary store, mirror it, and return a bearer token.

    Raises:
        400: missing fields or the email is already registered
        500: the primary store rejected the write
    """
    credential = await runtime.registry.register(body.name, body.email, body.password)
    return _ok(_credential_response(credential))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    credential = await runtime.auth.login(body.email, body.password)
    return _ok(_credential_response(credential))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    users = await runtime.registry.list_users(limit=limit)
    try:
        mirrored = await runtime.registry.list_mirrored_users(limit=limit)
        logger.info(
            "users_listed",
            requested_by=principal.user_id,
            primary_count=len(users),
            mirror_count=len(mirrored),
        )
    except StoreError:
        logger.warning("users_listed_mirror_unavailable", requested_by=principal.user_id)
    items = [
        UserResponse(
            id=user.id,
            name=user.name,
            email=user.email,
            system_role=user.system_role,
            created_at=user.created_at,
        )
        for user in users
    ]
    return _ok(UserListResponse(items=items, count=len(items)))


@router.post("/chatbot", response_model=Envelope, tags=["chat"])
async def chatbot(
    body: ChatRequest,
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Send one message to the assistant with the caller's full history as context."""
    reply = await runtime.chat.converse(
        principal.user_id, body.message, system_role=body.system_role
    )
    return _ok(ChatResponse(reply=reply))
