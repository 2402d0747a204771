"""Unit tests for password verification.

Tests for:
- argon2id hashing
- Uniform failures for unknown email and wrong password
- Inactive accounts and SSO-only accounts
"""

import pytest

from examauth.service.credentials import PASSWORD_ALGO, SSO_ONLY_ALGO, CredentialVerifier
from examauth.service.errors import AccountInactive, InvalidCredentials


@pytest.fixture
def verifier(memory_store):
    return CredentialVerifier(memory_store)


@pytest.fixture
def student(memory_store, verifier):
    user = memory_store.create_user("student@example.com", "Stu Dent", roles=["student"])
    verifier.save_password(user.id, "CorrectHorse1!")
    return user


class TestPasswordHashing:
    def test_hash_is_argon2id(self, verifier):
        pwd_hash, algo = verifier.hash_password("CorrectHorse1!")

        assert algo == PASSWORD_ALGO
        assert pwd_hash.startswith("$argon2id$")
        assert "CorrectHorse1!" not in pwd_hash

    def test_same_password_is_salted(self, verifier):
        first, _ = verifier.hash_password("CorrectHorse1!")
        second, _ = verifier.hash_password("CorrectHorse1!")
        assert first != second


class TestVerify:
    def test_correct_password_returns_user(self, verifier, student):
        user = verifier.verify("student@example.com", "CorrectHorse1!")
        assert user.id == student.id

    def test_email_is_case_insensitive(self, verifier, student):
        user = verifier.verify("  Student@Example.COM ", "CorrectHorse1!")
        assert user.id == student.id

    def test_wrong_password_and_unknown_email_fail_identically(self, verifier, student):
        with pytest.raises(InvalidCredentials) as wrong_password:
            verifier.verify("student@example.com", "nope")
        with pytest.raises(InvalidCredentials) as unknown_email:
            verifier.verify("ghost@example.com", "CorrectHorse1!")

        assert wrong_password.value.error_code == unknown_email.value.error_code
        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401

    @pytest.mark.parametrize("email,password", [("", "x"), ("   ", "x"), ("a@b.c", "")])
    def test_empty_input_is_invalid_credentials(self, verifier, email, password):
        with pytest.raises(InvalidCredentials):
            verifier.verify(email, password)

    def test_inactive_account_with_correct_password(self, memory_store, verifier, student):
        memory_store.set_user_active(student.id, False)

        with pytest.raises(AccountInactive):
            verifier.verify("student@example.com", "CorrectHorse1!")

    def test_inactive_account_with_wrong_password_does_not_reveal_status(
        self, memory_store, verifier, student
    ):
        memory_store.set_user_active(student.id, False)

        with pytest.raises(InvalidCredentials):
            verifier.verify("student@example.com", "wrong")

    def test_user_without_password_record(self, memory_store, verifier):
        memory_store.create_user("nopass@example.com")

        with pytest.raises(InvalidCredentials):
            verifier.verify("nopass@example.com", "anything")

    def test_sso_only_account_rejects_password_login(self, memory_store, verifier):
        user = memory_store.create_user("sso@example.com")
        verifier.save_unusable_password(user.id)

        _, algo = memory_store.get_password_record(user.id)
        assert algo == SSO_ONLY_ALGO
        with pytest.raises(InvalidCredentials):
            verifier.verify("sso@example.com", "anything")
