"""
Password policy tests.

Tests verify:
1. Each configurable rule is enforced only when enabled
2. Change validation requires the current password and a different new one
3. Temporary passwords satisfy the policy they were generated for
"""
import pytest

from security.passwords import hash_password
from security.policy import (CURRENT_PASSWORD_INCORRECT, PASSWORD_UNCHANGED, generate_temporary_password,
                             validate_password, validate_password_change)
from security.settings import SecuritySettings


class TestValidatePassword:

    def test_default_policy_accepts_mixed_password(self):
        result = validate_password("Secret123", SecuritySettings())
        assert result.valid
        assert result.errors == []

    def test_all_failures_are_reported(self):
        settings = SecuritySettings(password_require_special=True)
        result = validate_password("abc", settings)
        assert not result.valid
        assert len(result.errors) == 4  # length, uppercase, number, special

    @pytest.mark.parametrize("password,flag", [
        ("secret123", "password_require_uppercase"),
        ("SECRET123", "password_require_lowercase"),
        ("SecretPass", "password_require_numbers"),
    ])
    def test_rule_disabled_allows_password(self, password, flag):
        assert not validate_password(password, SecuritySettings()).valid
        assert validate_password(password, SecuritySettings(**{flag: False})).valid

    def test_special_character_rule(self):
        settings = SecuritySettings(password_require_special=True)
        assert not validate_password("Secret123", settings).valid
        assert validate_password("Secret123!", settings).valid

    def test_min_length_is_configurable(self):
        settings = SecuritySettings(password_min_length=12)
        result = validate_password("Secret123", settings)
        assert result.errors == ["Password must be at least 12 characters"]


class TestValidatePasswordChange:

    def test_wrong_current_password(self, ctx):
        current = hash_password("Secret123")
        result = validate_password_change(current, "wrong", "Another456", SecuritySettings())
        assert not result.valid
        assert result.errors == [CURRENT_PASSWORD_INCORRECT]

    def test_new_password_must_differ(self, ctx):
        current = hash_password("Secret123")
        result = validate_password_change(current, "Secret123", "Secret123", SecuritySettings())
        assert result.errors == [PASSWORD_UNCHANGED]

    def test_valid_change(self, ctx):
        current = hash_password("Secret123")
        assert validate_password_change(current, "Secret123", "Another456", SecuritySettings()).valid


class TestTemporaryPassword:

    @pytest.mark.parametrize("settings", [
        SecuritySettings(),
        SecuritySettings(password_require_special=True, password_min_length=16),
        SecuritySettings(password_require_uppercase=False, password_require_numbers=False),
    ])
    def test_generated_password_passes_policy(self, settings):
        for _ in range(20):
            password = generate_temporary_password(settings)
            assert validate_password(password, settings).valid
            assert len(password) >= max(settings.password_min_length, 12)
