from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sessionward.logging import get_logger
from sessionward.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(str, Enum):
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenCheck:
    """Outcome of verifying a token: claims on success, otherwise an error."""

    claims: Optional[dict[str, Any]] = None
    error: Optional[TokenError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.claims is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Issues and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with separate secrets, so a token of
    one kind never verifies as the other even before the ``token_type`` check.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock_skew: timedelta = timedelta(0),
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock_skew = clock_skew
        self._now = now

    # issuance
    def issue_access(self, user: User) -> IssuedToken:
        return self._issue(
            ACCESS,
            user.id,
            self.access_ttl,
            {"handle": user.handle, "email": user.email, "fullname": user.fullname},
        )

    def issue_refresh(self, user_id: str) -> IssuedToken:
        return self._issue(REFRESH, user_id, self.refresh_ttl, {})

    def _issue(
        self, kind: str, subject: str, ttl: timedelta, extra: dict[str, Any]
    ) -> IssuedToken:
        now = self._now()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "token_type": kind,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            **extra,
        }
        return IssuedToken(
            token=self._encode_jwt(payload, self._secrets[kind]),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            jti=jti,
        )

    # verification
    def verify(self, token: Optional[str], kind: str) -> TokenCheck:
        if kind not in self._secrets:
            raise ValueError(f"unknown token kind: {kind}")
        if not token or not isinstance(token, str) or not token.isascii():
            return TokenCheck(error=TokenError.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return TokenCheck(error=TokenError.MALFORMED)

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            return TokenCheck(error=TokenError.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind)
            return TokenCheck(error=TokenError.MALFORMED)

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._sign(signing_input, self._secrets[kind])
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return TokenCheck(error=TokenError.BAD_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError):
            return TokenCheck(error=TokenError.MALFORMED)
        if not isinstance(payload, dict):
            return TokenCheck(error=TokenError.MALFORMED)
        if payload.get("token_type") != kind or not payload.get("sub"):
            return TokenCheck(error=TokenError.MALFORMED)
        if payload.get("iss") != self.issuer:
            return TokenCheck(error=TokenError.MALFORMED)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return TokenCheck(error=TokenError.MALFORMED)

        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError, OverflowError):
            return TokenCheck(error=TokenError.MALFORMED)
        now_ts = self._now().timestamp()
        if exp_ts <= now_ts - self.clock_skew.total_seconds():
            return TokenCheck(error=TokenError.EXPIRED)
        return TokenCheck(claims=payload)

    # encoding helpers
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(
            secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"


__all__ = ["ACCESS", "REFRESH", "IssuedToken", "TokenCheck", "TokenError", "TokenIssuer"]
