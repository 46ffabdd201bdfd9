"""Unit tests for argon2 password hashing."""

import pytest

from sessionward.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestPasswordHashing:
    """Tests for hash and verify."""

    def test_hash_is_not_plaintext(self, hasher):
        """A derived hash never equals or embeds the input."""
        derived = hasher.hash("S3cret!")

        assert derived != "S3cret!"
        assert "S3cret!" not in derived
        assert derived.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, hasher):
        """Each call uses a fresh salt."""
        assert hasher.hash("S3cret!") != hasher.hash("S3cret!")

    def test_verify_accepts_original_password(self, hasher):
        derived = hasher.hash("S3cret!")

        assert hasher.verify("S3cret!", derived) is True

    def test_verify_rejects_other_password(self, hasher):
        derived = hasher.hash("S3cret!")

        assert hasher.verify("s3cret!", derived) is False
        assert hasher.verify("", derived) is False

    def test_verify_returns_false_for_garbage_hash(self, hasher):
        """Corrupt stored hashes fail closed instead of raising."""
        assert hasher.verify("S3cret!", "not-a-hash") is False
        assert hasher.verify("S3cret!", "") is False


class TestRehash:
    """Tests for cost-parameter upgrades."""

    def test_current_parameters_do_not_need_rehash(self, hasher):
        assert hasher.needs_rehash(hasher.hash("S3cret!")) is False

    def test_stale_parameters_need_rehash(self, hasher):
        stronger = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)

        assert stronger.needs_rehash(hasher.hash("S3cret!")) is True

    def test_hash_from_other_parameters_still_verifies(self, hasher):
        stronger = PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1)

        assert stronger.verify("S3cret!", hasher.hash("S3cret!")) is True
