"""
security/passwords.py -- Password strength rules.

Pure functions, no state. Every rule is checked on every call so the user
sees all problems at once instead of fixing them one round-trip at a time.
"""

import re

from security.models import PasswordCheck

DEFAULT_MIN_LENGTH = 8

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

COMMON_PASSWORDS = frozenset({"password", "123456", "password123", "admin", "qwerty"})

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SPECIAL_RE = re.compile(f"[{re.escape(SPECIAL_CHARACTERS)}]")


def validate_password(password: str, min_length: int = DEFAULT_MIN_LENGTH) -> PasswordCheck:
    """Return every strength rule the password violates.

    is_valid is True only when the error list is empty.
    """
    errors: list[str] = []

    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters long")
    if not _UPPER_RE.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if not _LOWER_RE.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if not _DIGIT_RE.search(password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common")

    return PasswordCheck(is_valid=not errors, errors=errors)
