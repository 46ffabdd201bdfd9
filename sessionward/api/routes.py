from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import NoReturn, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Response

from sessionward.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PrincipalResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from sessionward.logging import get_logger
from sessionward.service.errors import (
    AuthenticationError,
    Failure,
    FailureKind,
    error_for,
)
from sessionward.service.runtime import get_runtime
from sessionward.service.session import AccessPrincipal, Session
from sessionward.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

INVALID_SESSION = "invalid session"
INCORRECT_CREDENTIALS = "incorrect credentials"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _raise_failure(
    operation: str, failure: Failure, *, unauthorized_message: str
) -> NoReturn:
    """Turn a core failure into its HTTP error.

    NOT_FOUND and UNAUTHORIZED collapse into one indistinguishable 401 so
    clients cannot tell which identities exist.
    """
    logger.info(
        "request_rejected",
        operation=operation,
        kind=failure.kind.value,
        reason=failure.reason,
    )
    if failure.kind in (FailureKind.UNAUTHORIZED, FailureKind.NOT_FOUND):
        raise AuthenticationError(unauthorized_message)
    if failure.kind is FailureKind.TRANSIENT:
        raise error_for(failure, "service temporarily unavailable")
    raise error_for(failure, failure.reason.replace("_", " "))


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AccessPrincipal:
    runtime = get_runtime()
    token = _bearer_token(authorization) or access_token
    result = runtime.sessions.resolve_access(token)
    if not result.ok:
        _raise_failure("resolve_access", result.failure, unauthorized_message=INVALID_SESSION)
    return result.value


def _cookie_expiry(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _apply_session_cookies(response: Response, session: Session) -> None:
    settings = get_runtime().settings
    tokens = session.tokens
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        expires=_cookie_expiry(tokens.access_expires_at),
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        expires=_cookie_expiry(tokens.refresh_expires_at),
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        handle=user.handle,
        email=user.email,
        fullname=user.fullname,
        avatar_url=user.avatar_url,
        cover_image_url=user.cover_image_url,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _auth_response(session: Session) -> AuthResponse:
    tokens = session.tokens
    return AuthResponse(
        user=_user_response(session.user),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    return Envelope(status="ok", data={"status": "healthy"})


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an identity.

    Media URLs are accepted as already-hosted links; uploading is handled elsewhere.

    Raises:
        400: If a required field is missing or malformed
        409: If the handle or email is already taken
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.sessions.register,
        body.handle,
        body.email,
        body.password,
        body.fullname,
        avatar_url=body.avatar_url,
        cover_image_url=body.cover_image_url,
    )
    if not result.ok:
        if result.failure.kind is FailureKind.CONFLICT:
            raise error_for(result.failure, result.failure.reason)
        _raise_failure("register", result.failure, unauthorized_message=INVALID_SESSION)
    return Envelope(status="ok", data=_user_response(result.value))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with a handle or email plus password.

    Returns the token pair in the body and also sets both as HTTP-only cookies.

    Raises:
        401: If the identity is unknown or the password is wrong
        503: If the credential store is unavailable
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.sessions.login, body.login_key, body.password)
    if not result.ok:
        _raise_failure("login", result.failure, unauthorized_message=INCORRECT_CREDENTIALS)
    _apply_session_cookies(response, result.value)
    return Envelope(status="ok", data=_auth_response(result.value))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    result = await asyncio.to_thread(runtime.sessions.refresh, presented)
    if not result.ok:
        _raise_failure("refresh", result.failure, unauthorized_message=INVALID_SESSION)
    _apply_session_cookies(response, result.value)
    return Envelope(status="ok", data=_auth_response(result.value))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: AccessPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.sessions.logout, principal.user_id)
    if not result.ok:
        _raise_failure("logout", result.failure, unauthorized_message=INVALID_SESSION)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AccessPrincipal = Depends(get_principal),
):
    """Change the current identity's password.

    Requires the current password. Existing refresh tokens stay valid;
    call logout to end them.
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.sessions.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    if not result.ok:
        if result.failure.kind is FailureKind.UNAUTHORIZED:
            raise _http_error(
                "unauthorized", "current password is incorrect", status_code=401
            )
        _raise_failure("change_password", result.failure, unauthorized_message=INVALID_SESSION)
    return Envelope(status="ok", data={"status": "changed"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AccessPrincipal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            handle=principal.handle,
            email=principal.email,
            fullname=principal.fullname,
            expires_at=principal.expires_at,
        ),
    )
