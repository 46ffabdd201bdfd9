"""Unit tests for the session manager.

Tests for:
- Registration and conflicts
- Login, refresh rotation and reuse rejection
- Logout and password change
- Store outages surfacing as transient failures
"""

import threading
from datetime import timedelta

import pytest

from sessionward.service.errors import FailureKind
from sessionward.service.passwords import PasswordHasher
from sessionward.service.session import SessionManager
from sessionward.service.tokens import TokenIssuer
from sessionward.storage.errors import StoreUnavailable
from sessionward.storage.memory import MemoryStore


class FlakyStore(MemoryStore):
    """MemoryStore that fails the named operations with StoreUnavailable."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing: set[str] = set()

    def _maybe_fail(self, operation):
        if operation in self.failing:
            raise StoreUnavailable(f"{operation} timed out", operation=operation)

    def find_by_handle_or_email(self, value):
        self._maybe_fail("find_by_handle_or_email")
        return super().find_by_handle_or_email(value)

    def find_by_id(self, user_id):
        self._maybe_fail("find_by_id")
        return super().find_by_id(user_id)

    def set_refresh_token(self, user_id, token):
        self._maybe_fail("set_refresh_token")
        return super().set_refresh_token(user_id, token)

    def compare_and_set_refresh_token(self, user_id, expected, token):
        self._maybe_fail("compare_and_set_refresh_token")
        return super().compare_and_set_refresh_token(user_id, expected, token)

    def set_password_hash(self, user_id, password_hash):
        self._maybe_fail("set_password_hash")
        return super().set_password_hash(user_id, password_hash)


@pytest.fixture
def store():
    store = FlakyStore()
    store.connect()
    return store


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def issuer():
    return TokenIssuer(
        access_secret="session-access-secret-0123456789-abcdefghijkl",
        refresh_secret="session-refresh-secret-0123456789-abcdefghijk",
        issuer="sessionward",
        audience="sessionward-clients",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=10),
    )


@pytest.fixture
def manager(store, hasher, issuer):
    return SessionManager(store, hasher, issuer)


@pytest.fixture
def alice(manager):
    result = manager.register("alice", "alice@x.com", "S3cret!", "Alice Example")
    assert result.ok
    return result.value


class TestRegister:
    """Tests for identity creation."""

    def test_register_returns_stripped_user(self, manager, store, alice):
        assert alice.handle == "alice"
        assert not hasattr(alice, "password_hash")
        assert not hasattr(alice, "refresh_token")
        stored = store.find_by_id(alice.id)
        assert stored.password_hash.startswith("$argon2id$")
        assert stored.password_hash != "S3cret!"

    def test_register_conflict_on_handle(self, manager, alice):
        result = manager.register("ALICE", "other@x.com", "S3cret!", "Other")

        assert result.failure.kind is FailureKind.CONFLICT
        assert result.failure.detail == {"field": "handle"}

    def test_register_conflict_on_email(self, manager, alice):
        result = manager.register("other", "Alice@X.com", "S3cret!", "Other")

        assert result.failure.kind is FailureKind.CONFLICT
        assert result.failure.detail == {"field": "email"}

    def test_register_rejects_blank_fields(self, manager):
        result = manager.register("  ", "a@x.com", "", "Name")

        assert result.failure.kind is FailureKind.VALIDATION
        assert result.failure.detail == {"fields": ["handle", "password"]}


class TestLogin:
    """Tests for login."""

    def test_login_by_handle_or_email(self, manager, alice):
        by_handle = manager.login("alice", "S3cret!")
        by_email = manager.login("ALICE@x.com", "S3cret!")

        assert by_handle.ok and by_email.ok
        assert by_handle.value.user.id == alice.id

    def test_login_persists_refresh_token(self, manager, store, alice):
        session = manager.login("alice", "S3cret!").value

        assert store.find_by_id(alice.id).refresh_token == session.tokens.refresh_token
        assert session.tokens.token_type == "bearer"

    def test_unknown_identity_is_not_found(self, manager):
        result = manager.login("nobody", "S3cret!")

        assert result.failure.kind is FailureKind.NOT_FOUND

    def test_unknown_identity_still_runs_verification(self, manager, hasher, monkeypatch):
        calls = []
        real_verify = hasher.verify

        def counting_verify(plaintext, derived):
            calls.append(derived)
            return real_verify(plaintext, derived)

        monkeypatch.setattr(hasher, "verify", counting_verify)

        assert manager.login("nobody", "S3cret!").failure.kind is FailureKind.NOT_FOUND
        assert len(calls) == 1
        assert calls[0].startswith("$argon2id$")

    def test_wrong_password_is_unauthorized(self, manager, store, alice):
        result = manager.login("alice", "wrong")

        assert result.failure.kind is FailureKind.UNAUTHORIZED
        assert store.find_by_id(alice.id).refresh_token is None

    def test_blank_input_is_validation(self, manager):
        assert manager.login("", "S3cret!").failure.kind is FailureKind.VALIDATION
        assert manager.login("alice", "").failure.kind is FailureKind.VALIDATION

    def test_persist_failure_returns_no_tokens(self, manager, store, alice):
        store.failing.add("set_refresh_token")

        result = manager.login("alice", "S3cret!")

        assert result.failure.kind is FailureKind.TRANSIENT
        assert result.failure.kind.retriable
        assert result.value is None

    def test_lookup_failure_is_transient(self, manager, store, alice):
        store.failing.add("find_by_handle_or_email")

        assert manager.login("alice", "S3cret!").failure.kind is FailureKind.TRANSIENT

    def test_stale_hash_upgraded_on_login(self, store, issuer, alice, manager):
        stronger = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)
        upgraded_manager = SessionManager(store, stronger, issuer)
        before = store.find_by_id(alice.id).password_hash

        assert upgraded_manager.login("alice", "S3cret!").ok
        after = store.find_by_id(alice.id).password_hash
        assert after != before
        assert stronger.needs_rehash(after) is False


class TestRefresh:
    """Tests for rotation."""

    def test_rotation_lifecycle(self, manager, alice):
        """login -> refresh(R1) ok -> refresh(R1) rejected -> logout -> refresh(R2) rejected."""
        r1 = manager.login("alice", "S3cret!").value.tokens.refresh_token

        rotated = manager.refresh(r1)
        assert rotated.ok
        r2 = rotated.value.tokens.refresh_token
        assert r2 != r1

        reused = manager.refresh(r1)
        assert reused.failure.kind is FailureKind.UNAUTHORIZED
        assert reused.failure.reason == "refresh_token_superseded"

        assert manager.logout(alice.id).ok
        after_logout = manager.refresh(r2)
        assert after_logout.failure.kind is FailureKind.UNAUTHORIZED
        assert after_logout.failure.reason == "refresh_token_revoked"

    def test_reuse_leaves_current_token_intact(self, manager, store, alice):
        r1 = manager.login("alice", "S3cret!").value.tokens.refresh_token
        r2 = manager.refresh(r1).value.tokens.refresh_token

        manager.refresh(r1)

        assert store.find_by_id(alice.id).refresh_token == r2
        assert manager.refresh(r2).ok

    def test_strict_reuse_policy_clears_token(self, store, hasher, issuer, alice):
        strict = SessionManager(store, hasher, issuer, revoke_on_refresh_reuse=True)
        r1 = strict.login("alice", "S3cret!").value.tokens.refresh_token
        r2 = strict.refresh(r1).value.tokens.refresh_token

        assert strict.refresh(r1).failure.kind is FailureKind.UNAUTHORIZED
        assert store.find_by_id(alice.id).refresh_token is None
        assert strict.refresh(r2).failure.kind is FailureKind.UNAUTHORIZED

    def test_missing_and_malformed_tokens(self, manager):
        assert manager.refresh(None).failure.reason == "refresh_token_missing"
        assert manager.refresh("garbage").failure.reason == "refresh_token_malformed"

    def test_access_token_cannot_refresh(self, manager, alice):
        access = manager.login("alice", "S3cret!").value.tokens.access_token

        result = manager.refresh(access)

        assert result.failure.kind is FailureKind.UNAUTHORIZED
        assert result.failure.reason == "refresh_token_bad_signature"

    def test_expired_refresh_token(self, store, hasher, alice):
        short = SessionManager(
            store,
            hasher,
            TokenIssuer(
                access_secret="session-access-secret-0123456789-abcdefghijkl",
                refresh_secret="session-refresh-secret-0123456789-abcdefghijk",
                issuer="sessionward",
                audience="sessionward-clients",
                access_ttl=timedelta(minutes=15),
                refresh_ttl=timedelta(seconds=-1),
            ),
        )
        r1 = short.login("alice", "S3cret!").value.tokens.refresh_token

        assert short.refresh(r1).failure.reason == "refresh_token_expired"

    def test_concurrent_refresh_has_one_winner(self, manager, alice):
        r1 = manager.login("alice", "S3cret!").value.tokens.refresh_token
        barrier = threading.Barrier(6)
        results = []
        results_lock = threading.Lock()

        def attempt():
            barrier.wait()
            result = manager.refresh(r1)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results if r.ok]
        assert len(winners) == 1
        assert all(r.failure.kind is FailureKind.UNAUTHORIZED for r in results if not r.ok)

    def test_swap_failure_is_transient(self, manager, store, alice):
        r1 = manager.login("alice", "S3cret!").value.tokens.refresh_token
        store.failing.add("compare_and_set_refresh_token")

        assert manager.refresh(r1).failure.kind is FailureKind.TRANSIENT
        store.failing.clear()
        assert manager.refresh(r1).ok


class TestLogout:
    """Tests for logout."""

    def test_logout_is_idempotent(self, manager, alice):
        manager.login("alice", "S3cret!")

        assert manager.logout(alice.id).ok
        assert manager.logout(alice.id).ok

    def test_logout_unknown_identity(self, manager):
        assert manager.logout("missing").failure.kind is FailureKind.NOT_FOUND

    def test_logout_store_failure(self, manager, store, alice):
        store.failing.add("set_refresh_token")

        assert manager.logout(alice.id).failure.kind is FailureKind.TRANSIENT


class TestChangePassword:
    """Tests for password change."""

    def test_change_password_scenario(self, manager, alice):
        """Old password stops working, new one works, existing refresh token survives."""
        r1 = manager.login("alice", "S3cret!").value.tokens.refresh_token

        assert manager.change_password(alice.id, "S3cret!", "N3wPass!").ok
        assert manager.login("alice", "S3cret!").failure.kind is FailureKind.UNAUTHORIZED
        session = manager.login("alice", "N3wPass!")
        assert session.ok
        # A fresh login replaces the stored refresh token
        assert manager.refresh(session.value.tokens.refresh_token).ok
        assert manager.refresh(r1).failure.kind is FailureKind.UNAUTHORIZED

    def test_change_password_keeps_refresh_token(self, manager, store, alice):
        r1 = manager.login("alice", "S3cret!").value.tokens.refresh_token

        manager.change_password(alice.id, "S3cret!", "N3wPass!")

        assert store.find_by_id(alice.id).refresh_token == r1
        assert manager.refresh(r1).ok

    def test_wrong_old_password_leaves_hash(self, manager, store, alice):
        before = store.find_by_id(alice.id).password_hash

        result = manager.change_password(alice.id, "wrong", "N3wPass!")

        assert result.failure.kind is FailureKind.UNAUTHORIZED
        assert store.find_by_id(alice.id).password_hash == before

    def test_blank_new_password(self, manager, alice):
        assert manager.change_password(alice.id, "S3cret!", " ").failure.kind is FailureKind.VALIDATION

    def test_unknown_identity(self, manager):
        assert manager.change_password("missing", "a", "b").failure.kind is FailureKind.NOT_FOUND


class TestResolveAccess:
    """Tests for stateless access token resolution."""

    def test_resolves_claims(self, manager, alice):
        access = manager.login("alice", "S3cret!").value.tokens.access_token

        principal = manager.resolve_access(access).value

        assert principal.user_id == alice.id
        assert principal.handle == "alice"
        assert principal.email == "alice@x.com"

    def test_refresh_token_is_not_access(self, manager, alice):
        refresh = manager.login("alice", "S3cret!").value.tokens.refresh_token

        assert manager.resolve_access(refresh).failure.kind is FailureKind.UNAUTHORIZED

    def test_missing_token(self, manager):
        assert manager.resolve_access(None).failure.reason == "access_token_missing"


def _break_snapshots(monkeypatch):
    def refuse(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("sessionward.storage.memory.os.replace", refuse)


@pytest.fixture
def persistent(tmp_path, hasher, issuer):
    store = MemoryStore(fs_root=str(tmp_path))
    store.connect()
    manager = SessionManager(store, hasher, issuer)
    assert manager.register("alice", "alice@x.com", "S3cret!", "Alice Example").ok
    return manager


class TestSnapshotFailures:
    """A transient failure from a persistent store leaves nothing behind."""

    def test_change_password_can_be_retried(self, persistent, monkeypatch):
        user_id = persistent.login("alice", "S3cret!").value.user.id
        _break_snapshots(monkeypatch)

        result = persistent.change_password(user_id, "S3cret!", "N3wPass!")

        assert result.failure.kind is FailureKind.TRANSIENT
        monkeypatch.undo()
        assert persistent.login("alice", "S3cret!").ok
        assert persistent.change_password(user_id, "S3cret!", "N3wPass!").ok

    def test_register_can_be_retried(self, persistent, monkeypatch):
        _break_snapshots(monkeypatch)

        first = persistent.register("bob", "bob@x.com", "S3cret!", "Bob")

        assert first.failure.kind is FailureKind.TRANSIENT
        monkeypatch.undo()
        assert persistent.register("bob", "bob@x.com", "S3cret!", "Bob").ok

    def test_failed_login_keeps_previous_session(self, persistent, monkeypatch):
        session = persistent.login("alice", "S3cret!").value
        _break_snapshots(monkeypatch)

        assert persistent.login("alice", "S3cret!").failure.kind is FailureKind.TRANSIENT
        monkeypatch.undo()
        assert persistent.refresh(session.tokens.refresh_token).ok
