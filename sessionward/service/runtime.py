from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import Settings, get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.passwords import PasswordHasher
from sessionward.service.session import CredentialStore, SessionManager
from sessionward.service.tokens import TokenIssuer
from sessionward.storage.memory import MemoryStore
from sessionward.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:hunter2@db/sessionward -> postgresql://app:***@db/sessionward
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> CredentialStore:
    if settings.use_memory_store:
        return MemoryStore(
            fs_root=settings.state_dir, timeout_seconds=settings.store_timeout_seconds
        )
    return PostgresStore(
        settings.database_url,
        timeout_seconds=settings.store_timeout_seconds,
        min_size=settings.store_pool_min_size,
        max_size=settings.store_pool_max_size,
    )


def build_session_manager(settings: Settings, store: CredentialStore) -> SessionManager:
    hasher = PasswordHasher(
        time_cost=settings.password_time_cost,
        memory_cost=settings.password_memory_cost,
        parallelism=settings.password_parallelism,
    )
    issuer = TokenIssuer(
        access_secret=settings.access_token_secret,
        refresh_secret=settings.refresh_token_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        clock_skew=timedelta(seconds=settings.clock_skew_seconds),
    )
    return SessionManager(
        store,
        hasher,
        issuer,
        revoke_on_refresh_reuse=settings.revoke_on_refresh_reuse,
    )


class Runtime:
    """Holds the connected store and the session manager for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            database_url=None
            if self.settings.use_memory_store
            else _mask_url_password(self.settings.database_url),
        )
        try:
            self.store = build_store(self.settings)
            self.store.connect()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.sessions = build_session_manager(self.settings, self.store)
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def shutdown_runtime() -> None:
    """Close the store and drop the singleton; the next get_runtime() reconnects."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a freshly read environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
