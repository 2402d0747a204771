from __future__ import annotations

import base64
import os
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from examauth.logging import get_logger
from examauth.service.errors import AccountInactive, InvalidCredentials
from examauth.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
# Marker algo for accounts that can only sign in through SSO
SSO_ONLY_ALGO = "sso"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...


class CredentialVerifier:
    """Checks email/password pairs against stored argon2id hashes.

    Unknown accounts still pay for one argon2 verification against a dummy
    hash, so response time does not reveal whether an email is registered.
    """

    def __init__(self, store: CredentialStore, *, hasher: PasswordHasher | None = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(base64.urlsafe_b64encode(os.urandom(18)).decode())
        self.logger = logger

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def save_unusable_password(self, user_id: int) -> None:
        """Store a marker that no password can ever match."""
        unusable_secret = base64.urlsafe_b64encode(os.urandom(24)).decode()
        self.store.save_password(user_id, unusable_secret, SSO_ONLY_ALGO)

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def _check_password(self, user: User, password: str) -> bool:
        record = self.store.get_password_record(user.id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user.id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.info("password_login_not_allowed", user_id=user.id, algo=algo)
            self._burn_dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
        except VerificationError:
            self.logger.warning("password_verification_error", user_id=user.id)
            return False

    def verify(self, email: str, password: str) -> User:
        """Return the user owning ``email`` if ``password`` matches.

        Raises:
            InvalidCredentials: empty input, unknown email or wrong password.
            AccountInactive: the password matched but the account is disabled.
        """
        if not email or not email.strip() or not password:
            raise InvalidCredentials()
        user = self.store.get_user_by_email(email.strip().lower())
        if user is None:
            self._burn_dummy_verify(password)
            raise InvalidCredentials()
        if not self._check_password(user, password):
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountInactive()
        return user
