from __future__ import annotations

import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize.

    Two handles that render identically must normalize to the same key.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_login_key(value: str) -> str:
    """Handles and emails are matched case-insensitively after Unicode cleanup."""
    return normalize_unicode((value or "").strip()).strip().lower()


@dataclass
class User:
    """Public view of an identity: never carries credential material."""

    id: str
    handle: str
    email: str
    fullname: str
    avatar_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Identity:
    """Stored identity record including the password hash and live refresh token."""

    id: str
    handle: str
    email: str
    fullname: str
    password_hash: str
    avatar_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        handle: str,
        email: str,
        fullname: str,
        password_hash: str,
        *,
        avatar_url: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> "Identity":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            handle=normalize_login_key(handle),
            email=normalize_login_key(email),
            fullname=fullname.strip(),
            password_hash=password_hash,
            avatar_url=avatar_url,
            cover_image_url=cover_image_url,
            created_at=now,
            updated_at=now,
        )

    def to_user(self) -> User:
        return User(
            id=self.id,
            handle=self.handle,
            email=self.email,
            fullname=self.fullname,
            avatar_url=self.avatar_url,
            cover_image_url=self.cover_image_url,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
