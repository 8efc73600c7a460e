"""
Unit tests for authentication module (serverbackup/auth.py).

Tests password hashing, verification, validation, admin setup and login.
"""

import pytest
from serverbackup.auth import (
    authenticate,
    create_admin,
    hash_password,
    setup_required,
    validate_password_strength,
    verify_password,
)
from serverbackup.models import User


class TestPasswordHashing:
    """Test password hashing and verification functions."""

    def test_hash_password_returns_different_from_plain(self):
        """Test that hashed password is different from plain password."""
        hashed = hash_password("TestPassword123")

        assert isinstance(hashed, str)
        assert hashed != "TestPassword123"
        assert hashed.startswith('pbkdf2:sha256')

    def test_hash_password_generates_unique_hashes(self):
        """Test that same password generates different hashes (due to salt)."""
        assert hash_password("TestPassword123") != hash_password("TestPassword123")

    def test_verify_password_with_correct_password(self):
        hashed = hash_password("TestPassword123")

        assert verify_password(hashed, "TestPassword123") is True

    def test_verify_password_with_incorrect_password(self):
        hashed = hash_password("TestPassword123")

        assert verify_password(hashed, "WrongPassword123") is False


class TestPasswordValidation:
    """Test password strength requirements."""

    @pytest.mark.parametrize("password,expected_valid,expected_error_keyword", [
        ("short", False, "8 characters"),
        ("nouppercase123", False, "uppercase"),
        ("NOLOWERCASE123", False, "lowercase"),
        ("NoDigitsHere", False, "digit"),
        ("ValidPass1", True, ""),
        ("C0mpl3x!P@ss", True, ""),
    ])
    def test_validate_password_various_cases(self, password, expected_valid, expected_error_keyword):
        """Test password validation with various input cases."""
        is_valid, message = validate_password_strength(password)

        assert is_valid == expected_valid
        if expected_error_keyword:
            assert expected_error_keyword.lower() in message.lower()
        else:
            assert message == ""


class TestAdminSetup:
    """Test first-run admin creation."""

    def test_setup_required_without_users(self, db):
        assert setup_required() is True

    def test_create_admin(self, db):
        user = create_admin('  admin ', 'Admin123')

        assert user.username == 'admin'
        assert verify_password(user.password_hash, 'Admin123')
        assert setup_required() is False

    def test_create_admin_only_once(self, db, admin_user):
        with pytest.raises(ValueError, match='already completed'):
            create_admin('second', 'Admin123')

        assert User.query.count() == 1

    def test_create_admin_requires_username(self, db):
        with pytest.raises(ValueError, match='Username'):
            create_admin('   ', 'Admin123')

    def test_create_admin_rejects_weak_password(self, db):
        with pytest.raises(ValueError, match='uppercase'):
            create_admin('admin', 'password1')

        assert setup_required() is True


class TestAuthenticate:
    """Test credential checks."""

    def test_valid_credentials(self, admin_user):
        assert authenticate('admin', 'Admin123') is admin_user

    def test_wrong_password(self, admin_user):
        assert authenticate('admin', 'admin123') is None

    def test_unknown_user(self, admin_user):
        assert authenticate('root', 'Admin123') is None

    def test_missing_values(self, admin_user):
        assert authenticate(None, None) is None
