from __future__ import annotations

import pytest

from tenancy.core.errors import ValidationError
from tenancy.services.auth.passwords import (
    generate_password,
    hash_password,
    validate_password,
    verify_password,
)


def test_hash_and_verify() -> None:
    hashed = hash_password("correct-horse")
    assert hashed != "correct-horse"
    assert verify_password("correct-horse", hashed)
    assert not verify_password("wrong-horse", hashed)


def test_verify_handles_missing_and_malformed_hashes() -> None:
    assert not verify_password("anything", None)
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_validate_password_bounds() -> None:
    assert validate_password("12345678") == "12345678"
    with pytest.raises(ValidationError) as excinfo:
        validate_password("short", field="new_password")
    assert "new_password" in excinfo.value.details["fields"]
    with pytest.raises(ValidationError):
        validate_password("x" * 73)


def test_generated_passwords_are_alphanumeric_and_distinct() -> None:
    generated = {generate_password(12) for _ in range(20)}
    assert len(generated) == 20
    for password in generated:
        assert len(password) == 12
        assert password.isalnum()
