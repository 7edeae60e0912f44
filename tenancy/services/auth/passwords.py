from __future__ import annotations

import secrets
import string

import bcrypt

from tenancy.core.config import get_settings
from tenancy.core.errors import ValidationError


# Verified against when the account does not exist so both paths pay one bcrypt check.
_DUMMY_HASH = bcrypt.hashpw(b"tenancy-dummy-password", bcrypt.gensalt()).decode("utf-8")

_GENERATED_ALPHABET = string.ascii_letters + string.digits


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        bcrypt.checkpw(password.encode("utf-8"), _DUMMY_HASH.encode("utf-8"))
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


def burn_password_check(password: str) -> None:
    bcrypt.checkpw(password.encode("utf-8"), _DUMMY_HASH.encode("utf-8"))


def validate_password(password: str, *, field: str = "password") -> str:
    settings = get_settings()
    if not password or len(password) < settings.password_min_length:
        raise ValidationError.for_field(
            field, f"Password must be at least {settings.password_min_length} characters"
        )
    # bcrypt ignores everything past 72 bytes.
    if len(password.encode("utf-8")) > 72:
        raise ValidationError.for_field(field, "Password must be at most 72 bytes")
    return password


def generate_password(length: int = 12) -> str:
    return "".join(secrets.choice(_GENERATED_ALPHABET) for _ in range(length))
