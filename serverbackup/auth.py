"""
Authentication utilities for Flask-Login integration and password management.
"""

from typing import Optional

from werkzeug.security import generate_password_hash, check_password_hash

from serverbackup import db
from serverbackup.models import User


def hash_password(password: str) -> str:
    """
    Hash a password using werkzeug's pbkdf2:sha256.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash: str, password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        password_hash: Stored password hash
        password: Plain text password to verify

    Returns:
        True if password matches, False otherwise
    """
    return check_password_hash(password_hash, password)


def validate_password_strength(password: str) -> tuple[bool, str]:
    """
    Validate password meets security requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter"

    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter"

    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one digit"

    return True, ""


def setup_required() -> bool:
    """True until the first admin account exists."""
    return User.query.count() == 0


def create_admin(username: str, password: str) -> User:
    """
    Create the admin account.

    Raises:
        ValueError: If an account already exists or the input is invalid
    """
    if not setup_required():
        raise ValueError("Setup already completed")

    username = (username or '').strip()
    if not username:
        raise ValueError("Username is required")

    is_valid, error_msg = validate_password_strength(password or '')
    if not is_valid:
        raise ValueError(error_msg)

    user = User(username=username, password_hash=hash_password(password))
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> Optional[User]:
    """Return the user if the credentials match, else None."""
    user = User.query.filter_by(username=(username or '').strip()).first()
    if not user or not verify_password(user.password_hash, password or ''):
        return None
    return user
