# tests/core/test_password_policy.py

import pytest

from shopguard.core.exceptions import ValidationError
from shopguard.core.security.password_policy import (
    ensure_strong_password,
    validate_password_strength,
)


@pytest.mark.unit
class TestPasswordPolicy:

    def test_strong_password(self):
        result = validate_password_strength("Sm0ke!Test#2024")

        assert result.valid
        assert result.strength == "strong"
        assert result.errors == []

    def test_medium_password(self):
        result = validate_password_strength("Ab1!cdef")

        assert result.valid
        assert result.strength == "medium"

    @pytest.mark.parametrize("password,fragment", [
        ("Ab1!", "at least 8"),
        ("abcdefg1!", "uppercase"),
        ("ABCDEFG1!", "lowercase"),
        ("Abcdefgh!", "number"),
        ("Abcdefgh1", "special"),
        ("MyPassword1!", "common pattern"),
        ("Abbbbbc1!x", "repeat"),
    ])
    def test_rule_violations(self, password, fragment):
        result = validate_password_strength(password)

        assert not result.valid
        assert any(fragment in error for error in result.errors)

    def test_none_is_weak(self):
        result = validate_password_strength(None)

        assert not result.valid
        assert result.strength == "weak"

    def test_ensure_strong_password_raises_with_all_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            ensure_strong_password("short")

        assert exc_info.value.field == "password"
        assert len(exc_info.value.errors) >= 3
