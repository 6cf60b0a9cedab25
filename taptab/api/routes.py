from __future__ import annotations

import hmac
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from taptab.api.schemas import (
    AuthResponse,
    CleanupResponse,
    Envelope,
    LogoutRequest,
    OTPRequest,
    OTPVerifyRequest,
    PasswordLoginRequest,
    PrincipalResponse,
    TokenRefreshRequest,
    TokenStatusRequest,
    TokenStatusResponse,
)
from taptab.logging import get_logger
from taptab.service.errors import ForbiddenError
from taptab.service.runtime import get_runtime
from taptab.service.tokens import TokenClaims, TokenPair, expires_within, peek_unverified
from taptab.storage.common import parse_ip_address
from taptab.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _client_context(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": parse_ip_address(request.client.host if request.client else None),
        "user_agent": request.headers.get("User-Agent"),
    }


def _auth_response(principal: Principal, pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        principal_id=principal.id,
        email=principal.email,
        role=principal.role.value,
        tenant_id=principal.tenant_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
        remember_me=pair.remember_me,
    )


def get_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def require_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
) -> None:
    expected = get_runtime().settings.cron_secret
    if not expected:
        raise ForbiddenError("cron endpoints are disabled")
    if not x_cron_secret or not hmac.compare_digest(
        x_cron_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("cron_secret_rejected")
        raise ForbiddenError("invalid cron secret")


# =========================================================================
# Authentication
# =========================================================================


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: PasswordLoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If too many failed logins were recorded for this email
    """
    runtime = get_runtime()
    principal, pair = runtime.auth.login_with_password(
        body.email,
        body.password,
        remember_me=body.remember_me,
        **_client_context(request),
    )
    return Envelope(status="ok", data=_auth_response(principal, pair))


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
def request_otp(body: OTPRequest, request: Request):
    """Send a one-time code to the given email.

    The response is identical whether or not the email is registered.
    """
    runtime = get_runtime()
    runtime.auth.request_otp(body.email, **_client_context(request))
    return Envelope(
        status="ok",
        data={
            "message": "if the account exists, a code has been sent",
            "expires_in_seconds": runtime.settings.otp_ttl_seconds,
        },
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
def verify_otp(body: OTPVerifyRequest, request: Request):
    """Exchange a one-time code for a token pair.

    Raises:
        400: otp_not_found, otp_already_used, otp_expired or otp_invalid
        423: otp_locked after too many wrong codes
    """
    runtime = get_runtime()
    principal, pair = runtime.auth.login_with_otp(
        body.email,
        body.code,
        remember_me=body.remember_me,
        **_client_context(request),
    )
    return Envelope(status="ok", data=_auth_response(principal, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    principal, pair = runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(principal, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(body: Optional[LogoutRequest] = None, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    access_token = runtime.auth.extract_bearer(authorization)
    refresh_token = body.refresh_token if body else None
    if not access_token and not refresh_token:
        raise _http_error("unauthorized", "no token presented", status_code=401)
    revoked = runtime.auth.logout(access_token=access_token, refresh_token=refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(claims: TokenClaims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            principal_id=claims.principal.id,
            email=claims.principal.email,
            role=claims.principal.role.value,
            tenant_id=claims.principal.tenant_id,
            remember_me=claims.remember_me,
            expires_at=claims.expires_at,
        ),
    )


@router.post("/auth/token/status", response_model=Envelope, tags=["auth"])
def token_status(body: TokenStatusRequest):
    """Report a token's expiry without verifying it.

    Only a hint for clients deciding when to refresh; never an authorization
    decision.
    """
    view = peek_unverified(body.token)
    window = timedelta(seconds=body.warn_within_seconds)
    if view is None:
        return Envelope(status="ok", data=TokenStatusResponse(readable=False))
    return Envelope(
        status="ok",
        data=TokenStatusResponse(
            readable=True,
            kind=view.kind,
            issued_at=view.issued_at,
            expires_at=view.expires_at,
            expires_soon=expires_within(body.token, window),
        ),
    )


# =========================================================================
# Scheduled maintenance
# =========================================================================


@router.post(
    "/cron/cleanup",
    response_model=Envelope,
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)
def cron_cleanup():
    runtime = get_runtime()
    report = runtime.auth.run_cleanup()
    return Envelope(status="ok", data=CleanupResponse(**report.as_dict()))


@router.post(
    "/cron/warmup",
    response_model=Envelope,
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)
def cron_warmup():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.warmup())
