from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from taptab.config import Settings
from taptab.logging import get_logger
from taptab.service.errors import (
    MalformedTokenError,
    TokenError,
    TokenExpiredError,
    TokenRevokedError,
    WrongTokenKindError,
)
from taptab.service.revocation import RevocationList
from taptab.storage.common import from_timestamp, utcnow
from taptab.storage.models import Principal, Role

logger = get_logger(__name__)

# Issued tokens are well under 1 KiB
MAX_TOKEN_LENGTH = 8192


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    principal: Principal
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    remember_me: bool
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    remember_me: bool


@dataclass(frozen=True)
class UnverifiedTokenView:
    """Claims read WITHOUT signature verification.

    Only good for display hints such as "session expires soon". Never use it
    to make an authentication decision.
    """

    kind: Optional[str]
    issued_at: Optional[datetime]
    expires_at: Optional[datetime]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: bytes, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
    )


def _encode_jwt(secret: bytes, payload: dict[str, Any]) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def _read_payload(segment: str) -> Optional[dict[str, Any]]:
    try:
        payload = json.loads(_decode_segment(segment))
    except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
        return None
    return payload if isinstance(payload, dict) else None


def _is_token_shaped(token: Any) -> bool:
    return isinstance(token, str) and token.isascii() and len(token) <= MAX_TOKEN_LENGTH


def peek_unverified(token: str) -> Optional[UnverifiedTokenView]:
    """Read kind and timestamps from a token without checking its signature.

    Returns None when the token cannot be parsed at all.
    """
    if not _is_token_shaped(token):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = _read_payload(parts[1])
    if payload is None:
        return None

    def _ts(name: str) -> Optional[datetime]:
        value = payload.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        try:
            return from_timestamp(value)
        except (OverflowError, OSError, ValueError):
            return None

    kind = payload.get("token_type")
    return UnverifiedTokenView(
        kind=kind if isinstance(kind, str) else None,
        issued_at=_ts("iat"),
        expires_at=_ts("exp"),
    )


def expires_within(token: str, window: timedelta, *, now: Optional[datetime] = None) -> bool:
    """UI hint: True if the token is unreadable or expires inside ``window``."""
    view = peek_unverified(token)
    if view is None or view.expires_at is None:
        return True
    return view.expires_at <= (now or utcnow()) + window


class TokenIssuer:
    """Mints signed access and refresh tokens. Holds no mutable state."""

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self._secret = settings.jwt_secret.encode()
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self._refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self._remember_me_factor = settings.remember_me_factor
        self._clock = clock or utcnow
        if self._access_ttl >= self._refresh_ttl:
            raise ValueError("access token lifetime must be shorter than refresh lifetime")

    def lifetime(self, kind: TokenKind, remember_me: bool = False) -> timedelta:
        base = self._access_ttl if TokenKind(kind) is TokenKind.ACCESS else self._refresh_ttl
        return base * self._remember_me_factor if remember_me else base

    def issue(
        self,
        principal: Principal,
        kind: TokenKind,
        remember_me: bool = False,
        *,
        now: Optional[datetime] = None,
    ) -> tuple[str, TokenClaims]:
        now = now or self._clock()
        kind = TokenKind(kind)
        issued_ts = int(now.timestamp())
        expires_ts = int((now + self.lifetime(kind, remember_me)).timestamp())
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self._issuer,
            "aud": self._audience,
            "sub": principal.id,
            "email": principal.email,
            "role": Role.parse(principal.role).value,
            "tenant_id": principal.tenant_id,
            "token_type": kind.value,
            "remember_me": bool(remember_me),
            "jti": token_id,
            "iat": issued_ts,
            "exp": expires_ts,
        }
        claims = TokenClaims(
            principal=principal,
            kind=kind,
            issued_at=from_timestamp(issued_ts),
            expires_at=from_timestamp(expires_ts),
            remember_me=bool(remember_me),
            token_id=token_id,
        )
        return _encode_jwt(self._secret, payload), claims

    def issue_pair(self, principal: Principal, remember_me: bool = False) -> TokenPair:
        now = self._clock()
        access_token, access = self.issue(principal, TokenKind.ACCESS, remember_me, now=now)
        refresh_token, refresh = self.issue(principal, TokenKind.REFRESH, remember_me, now=now)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            remember_me=bool(remember_me),
        )


class TokenVerifier:
    """Full token verification: Malformed > WrongKind > Expired > Revoked.

    Revocation lookups that cannot reach the store raise
    StoreUnavailableError; a token is never accepted without that check.
    """

    def __init__(
        self,
        settings: Settings,
        revocations: RevocationList,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = settings.jwt_secret.encode()
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._leeway = timedelta(seconds=settings.token_clock_skew_seconds)
        self._revocations = revocations
        self._clock = clock or utcnow

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        expected_kind = TokenKind(expected_kind)
        try:
            claims = self.decode_signed(token)
            if claims.kind is not expected_kind:
                raise WrongTokenKindError(
                    "wrong token kind", detail={"expected": expected_kind.value}
                )
            if self._clock() > claims.expires_at + self._leeway:
                raise TokenExpiredError("token expired")
            if self._revocations.contains(claims.token_id):
                raise TokenRevokedError("token revoked")
        except TokenError as exc:
            logger.info(
                "token_rejected",
                error_code=exc.error_code,
                expected_kind=expected_kind.value,
                reason=exc.message,
            )
            raise
        return claims

    def decode_signed(self, token: str) -> TokenClaims:
        """Check structure, signature, issuer and audience; ignore expiry and kind."""
        if not _is_token_shaped(token):
            raise MalformedTokenError("token must be an ASCII string of bounded length")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedTokenError("token is not a JWT") from None

        header = _read_payload(header_b64)
        if header is None:
            raise MalformedTokenError("token header unreadable")
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedTokenError("unsupported token algorithm")

        expected_sig = _sign(self._secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise MalformedTokenError("token signature mismatch")

        payload = _read_payload(payload_b64)
        if payload is None:
            raise MalformedTokenError("token payload unreadable")
        if payload.get("iss") != self._issuer:
            raise MalformedTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self._audience in aud
        else:
            valid_aud = aud == self._audience
        if not valid_aud:
            raise MalformedTokenError("token audience mismatch")
        return self._claims_from_payload(payload)

    def _claims_from_payload(self, payload: dict[str, Any]) -> TokenClaims:
        for name in ("sub", "email", "tenant_id", "jti"):
            if not isinstance(payload.get(name), str) or not payload[name]:
                raise MalformedTokenError(f"claim {name} missing or invalid")
        for name in ("iat", "exp"):
            value = payload.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise MalformedTokenError(f"claim {name} missing or invalid")
        if not isinstance(payload.get("remember_me"), bool):
            raise MalformedTokenError("claim remember_me missing or invalid")
        try:
            kind = TokenKind(payload.get("token_type"))
            role = Role.parse(payload.get("role"))
        except ValueError as exc:
            raise MalformedTokenError(str(exc)) from None
        try:
            issued_at = from_timestamp(payload["iat"])
            expires_at = from_timestamp(payload["exp"])
        except (OverflowError, OSError, ValueError):
            raise MalformedTokenError("token timestamps out of range") from None
        return TokenClaims(
            principal=Principal(
                id=payload["sub"],
                email=payload["email"],
                role=role,
                tenant_id=payload["tenant_id"],
            ),
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            remember_me=payload["remember_me"],
            token_id=payload["jti"],
        )
