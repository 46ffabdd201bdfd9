from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sessionward.logging import get_logger
from sessionward.service.errors import FailureKind, Result
from sessionward.service.passwords import PasswordHasher
from sessionward.service.tokens import ACCESS, REFRESH, TokenIssuer
from sessionward.storage.errors import ConstraintViolation, StoreUnavailable
from sessionward.storage.models import Identity, TokenPair, User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def connect(self) -> None: ...

    def close(self) -> None: ...

    def find_by_handle_or_email(self, value: str) -> Optional[Identity]: ...

    def find_by_id(self, user_id: str) -> Optional[Identity]: ...

    def create(
        self,
        handle: str,
        email: str,
        fullname: str,
        password_hash: str,
        *,
        avatar_url: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> Identity: ...

    def set_refresh_token(self, user_id: str, token: Optional[str]) -> bool: ...

    def compare_and_set_refresh_token(
        self, user_id: str, expected: Optional[str], token: Optional[str]
    ) -> bool: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> bool: ...


@dataclass
class Session:
    user: User
    tokens: TokenPair


@dataclass
class AccessPrincipal:
    """Claims carried by a verified access token; no store lookup involved."""

    user_id: str
    handle: str
    email: str
    fullname: str
    expires_at: datetime


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class SessionManager:
    """Credential and session lifecycle: register, login, refresh, logout, password change.

    Expected failures come back as ``Result`` values with a ``FailureKind``;
    nothing here raises for bad credentials or a flaky store. The ``reason``
    on a failure is for logs only, callers must not echo it to clients.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        *,
        revoke_on_refresh_reuse: bool = False,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.revoke_on_refresh_reuse = revoke_on_refresh_reuse
        self.logger = logger

    def _issue_pair(self, user: User) -> TokenPair:
        access = self.issuer.issue_access(user)
        refresh = self.issuer.issue_refresh(user.id)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    def _transient(self, operation: str, exc: StoreUnavailable) -> Result:
        self.logger.warning(
            "credential_store_unavailable", operation=operation, error=exc.message
        )
        return Result.fail(FailureKind.TRANSIENT, "store_unavailable")

    def register(
        self,
        handle: str,
        email: str,
        password: str,
        fullname: str,
        *,
        avatar_url: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> Result[User]:
        missing = [
            name
            for name, value in (
                ("handle", handle),
                ("email", email),
                ("password", password),
                ("fullname", fullname),
            )
            if _blank(value)
        ]
        if missing:
            return Result.fail(
                FailureKind.VALIDATION, "missing_fields", {"fields": missing}
            )
        password_hash = self.hasher.hash(password)
        try:
            identity = self.store.create(
                handle,
                email,
                fullname,
                password_hash,
                avatar_url=avatar_url,
                cover_image_url=cover_image_url,
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", field=exc.detail.get("field"))
            return Result.fail(FailureKind.CONFLICT, exc.message, dict(exc.detail))
        except StoreUnavailable as exc:
            return self._transient("register", exc)
        self.logger.info("identity_registered", user_id=identity.id)
        return Result.success(identity.to_user())

    def login(self, handle_or_email: str, password: str) -> Result[Session]:
        if _blank(handle_or_email) or not password:
            return Result.fail(FailureKind.VALIDATION, "missing_credentials")
        try:
            identity = self.store.find_by_handle_or_email(handle_or_email)
        except StoreUnavailable as exc:
            return self._transient("login", exc)
        if identity is None:
            self.hasher.verify_dummy(password)
            self.logger.info("login_rejected", reason="identity_not_found")
            return Result.fail(FailureKind.NOT_FOUND, "identity_not_found")
        if not self.hasher.verify(password, identity.password_hash):
            self.logger.info("login_rejected", reason="password_mismatch", user_id=identity.id)
            return Result.fail(FailureKind.UNAUTHORIZED, "password_mismatch")

        user = identity.to_user()
        tokens = self._issue_pair(user)
        # Tokens are only handed out once the refresh token is stored
        try:
            persisted = self.store.set_refresh_token(identity.id, tokens.refresh_token)
        except StoreUnavailable as exc:
            return self._transient("login", exc)
        if not persisted:
            self.logger.warning("login_rejected", reason="identity_vanished", user_id=identity.id)
            return Result.fail(FailureKind.NOT_FOUND, "identity_not_found")

        if self.hasher.needs_rehash(identity.password_hash):
            self._upgrade_hash(identity.id, password)
        self.logger.info("login_succeeded", user_id=identity.id)
        return Result.success(Session(user=user, tokens=tokens))

    def _upgrade_hash(self, user_id: str, password: str) -> None:
        try:
            self.store.set_password_hash(user_id, self.hasher.hash(password))
        except StoreUnavailable as exc:
            # The login itself already succeeded; the upgrade is retried next login
            self.logger.warning("password_rehash_deferred", user_id=user_id, error=exc.message)
            return
        self.logger.info("password_rehashed", user_id=user_id)

    def refresh(self, presented: Optional[str]) -> Result[Session]:
        if _blank(presented):
            return Result.fail(FailureKind.UNAUTHORIZED, "refresh_token_missing")
        check = self.issuer.verify(presented, REFRESH)
        if not check.ok:
            reason = f"refresh_token_{check.error.value}"
            self.logger.info("refresh_rejected", reason=reason)
            return Result.fail(FailureKind.UNAUTHORIZED, reason)

        user_id = str(check.claims["sub"])
        try:
            identity = self.store.find_by_id(user_id)
        except StoreUnavailable as exc:
            return self._transient("refresh", exc)
        if identity is None:
            self.logger.info("refresh_rejected", reason="identity_not_found", user_id=user_id)
            return Result.fail(FailureKind.UNAUTHORIZED, "identity_not_found")

        stored = identity.refresh_token
        if stored is None or not hmac.compare_digest(stored, presented):
            return self._reject_reuse(identity, stored)

        user = identity.to_user()
        tokens = self._issue_pair(user)
        try:
            swapped = self.store.compare_and_set_refresh_token(
                identity.id, presented, tokens.refresh_token
            )
        except StoreUnavailable as exc:
            return self._transient("refresh", exc)
        if not swapped:
            # Another refresh with the same token won the race
            self.logger.info("refresh_rejected", reason="rotation_lost", user_id=identity.id)
            return Result.fail(FailureKind.UNAUTHORIZED, "rotation_lost")
        self.logger.info("refresh_rotated", user_id=identity.id)
        return Result.success(Session(user=user, tokens=tokens))

    def _reject_reuse(self, identity: Identity, stored: Optional[str]) -> Result[Session]:
        reason = "refresh_token_revoked" if stored is None else "refresh_token_superseded"
        self.logger.warning("refresh_rejected", reason=reason, user_id=identity.id)
        if stored is not None and self.revoke_on_refresh_reuse:
            try:
                cleared = self.store.compare_and_set_refresh_token(identity.id, stored, None)
            except StoreUnavailable as exc:
                self.logger.warning(
                    "refresh_reuse_revocation_failed", user_id=identity.id, error=exc.message
                )
            else:
                if cleared:
                    self.logger.warning("refresh_reuse_revoked_session", user_id=identity.id)
        return Result.fail(FailureKind.UNAUTHORIZED, reason)

    def logout(self, user_id: str) -> Result[None]:
        try:
            cleared = self.store.set_refresh_token(user_id, None)
        except StoreUnavailable as exc:
            return self._transient("logout", exc)
        if not cleared:
            return Result.fail(FailureKind.NOT_FOUND, "identity_not_found")
        self.logger.info("logout_succeeded", user_id=user_id)
        return Result.success(None)

    def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> Result[None]:
        if _blank(new_password):
            return Result.fail(FailureKind.VALIDATION, "new_password_missing")
        try:
            identity = self.store.find_by_id(user_id)
        except StoreUnavailable as exc:
            return self._transient("change_password", exc)
        if identity is None:
            return Result.fail(FailureKind.NOT_FOUND, "identity_not_found")
        if not self.hasher.verify(old_password or "", identity.password_hash):
            self.logger.info("password_change_rejected", user_id=user_id)
            return Result.fail(FailureKind.UNAUTHORIZED, "password_mismatch")
        try:
            updated = self.store.set_password_hash(user_id, self.hasher.hash(new_password))
        except StoreUnavailable as exc:
            return self._transient("change_password", exc)
        if not updated:
            return Result.fail(FailureKind.NOT_FOUND, "identity_not_found")
        # Existing refresh token stays valid; callers wanting revocation call logout
        self.logger.info("password_changed", user_id=user_id)
        return Result.success(None)

    def resolve_access(self, access_token: Optional[str]) -> Result[AccessPrincipal]:
        if _blank(access_token):
            return Result.fail(FailureKind.UNAUTHORIZED, "access_token_missing")
        check = self.issuer.verify(access_token, ACCESS)
        if not check.ok:
            return Result.fail(FailureKind.UNAUTHORIZED, f"access_token_{check.error.value}")
        claims = check.claims
        return Result.success(
            AccessPrincipal(
                user_id=str(claims["sub"]),
                handle=str(claims.get("handle", "")),
                email=str(claims.get("email", "")),
                fullname=str(claims.get("fullname", "")),
                expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
            )
        )


__all__ = ["AccessPrincipal", "CredentialStore", "Session", "SessionManager"]
