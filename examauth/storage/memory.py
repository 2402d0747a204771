from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from examauth.logging import get_logger
from examauth.storage.errors import ConstraintViolation
from examauth.storage.models import (
    AuditEvent,
    RefreshToken,
    SsoState,
    User,
    UserAuthProvider,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process backing store for development and tests.

    Every read returns a copy and every write happens under ``_data_lock``, so
    the conditional updates (rotation, state consumption) are atomic with
    respect to concurrent callers in the same process.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.providers: List[UserAuthProvider] = []
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.sso_states: Dict[str, SsoState] = {}
        self.audit_events: List[AuditEvent] = []
        self._user_id_seq: int = 1
        # Thread lock for sequence counters
        self._seq_lock = threading.Lock()
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()

    def _next_user_id(self) -> int:
        with self._seq_lock:
            user_id = self._user_id_seq
            self._user_id_seq += 1
            return user_id

    # user / auth
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        roles: Optional[List[str]] = None,
        email_verified: bool = False,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_user_id(),
                email=normalized,
                display_name=display_name,
                roles=list(roles or []),
                email_verified=email_verified,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user, roles=list(user.roles))

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, roles=list(user.roles)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user, roles=list(user.roles)) if user else None

    def link_user_auth_provider(self, user_id: int, provider: str, subject: str) -> None:
        with self._data_lock:
            for existing in self.providers:
                if existing.provider == provider and existing.subject == subject:
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "provider identity already linked",
                            {"provider": provider},
                        )
                    return
            if user_id not in self.users:
                raise ConstraintViolation("user not found for link", {"user_id": user_id})
            max_id = max((p.id for p in self.providers), default=0)
            self.providers.append(
                UserAuthProvider(
                    id=max_id + 1, user_id=user_id, provider=provider, subject=subject
                )
            )

    def get_user_by_provider(self, provider: str, subject: str) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.subject == subject:
                    return self.get_user(mapping.user_id)
            return None

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return self.get_user(user_id)

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            return self.get_user(user_id)

    def record_login(self, user_id: int, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def add_refresh_token(self, record: RefreshToken) -> None:
        with self._data_lock:
            if record.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
            self.refresh_tokens[record.id] = replace(record)
            self._refresh_by_hash[record.token_hash] = record.id

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(token_id) if token_id else None
            return replace(record) if record else None

    def get_chain_expiry(self, chain_id: str) -> Optional[datetime]:
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.chain_id == chain_id:
                    return record.chain_expires_at
            return None

    def list_chain_tokens(self, chain_id: str) -> List[RefreshToken]:
        with self._data_lock:
            records = [replace(r) for r in self.refresh_tokens.values() if r.chain_id == chain_id]
            return sorted(records, key=lambda r: r.issued_at)

    def rotate_refresh_token(
        self, old_id: str, successor: RefreshToken, *, now: datetime | None = None
    ) -> bool:
        """Mark ``old_id`` used and insert ``successor`` in one step.

        Returns False without writing anything when the old token is already
        used or revoked; exactly one concurrent caller can win.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(old_id)
            if current is None or current.used_at is not None or current.revoked_at is not None:
                return False
            if successor.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
            current.used_at = now or _utcnow()
            current.replaced_by_id = successor.id
            self.refresh_tokens[successor.id] = replace(successor)
            self._refresh_by_hash[successor.token_hash] = successor.id
            return True

    def revoke_refresh_chain(
        self, chain_id: str, reason: str, *, now: datetime | None = None
    ) -> int:
        revoked_at = now or _utcnow()
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.chain_id == chain_id and record.revoked_at is None:
                    record.revoked_at = revoked_at
                    record.revoked_reason = reason
                    count += 1
        return count

    def revoke_user_refresh_tokens(
        self, user_id: int, reason: str, *, now: datetime | None = None
    ) -> int:
        revoked_at = now or _utcnow()
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = revoked_at
                    record.revoked_reason = reason
                    count += 1
        return count

    def list_active_refresh_tokens(
        self, user_id: int, *, now: datetime | None = None
    ) -> List[RefreshToken]:
        """Return the live (unused, unrevoked, unexpired) token of each chain."""
        current = now or _utcnow()
        with self._data_lock:
            records = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id
                and r.used_at is None
                and r.revoked_at is None
                and r.expires_at > current
            ]
        return sorted(records, key=lambda r: r.chain_expires_at)

    def purge_refresh_tokens(self, before: datetime) -> int:
        """Delete tokens whose chain ended before ``before``."""
        with self._data_lock:
            stale = [r for r in self.refresh_tokens.values() if r.chain_expires_at < before]
            for record in stale:
                self.refresh_tokens.pop(record.id, None)
                self._refresh_by_hash.pop(record.token_hash, None)
            return len(stale)

    # sso state
    def save_sso_state(self, record: SsoState) -> None:
        with self._data_lock:
            if record.state in self.sso_states:
                raise ConstraintViolation("sso state collision", {"field": "state"})
            self.sso_states[record.state] = replace(record)

    def get_sso_state(self, state: str) -> Optional[SsoState]:
        with self._data_lock:
            record = self.sso_states.get(state)
            return replace(record) if record else None

    def mark_sso_state_consumed(self, state: str, now: datetime) -> Optional[SsoState]:
        """Consume a pending, unexpired state; None when another caller got there first."""
        with self._data_lock:
            record = self.sso_states.get(state)
            if record is None or record.consumed_at is not None or record.is_expired(now):
                return None
            record.consumed_at = now
            return replace(record)

    def purge_sso_states(self, before: datetime) -> int:
        with self._data_lock:
            stale = [key for key, rec in self.sso_states.items() if rec.expires_at < before]
            for key in stale:
                self.sso_states.pop(key, None)
            return len(stale)

    # audit
    def record_audit_event(
        self,
        category: str,
        severity: str,
        action: str,
        *,
        actor: Optional[str] = None,
        details: Optional[dict] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            category=category,
            severity=severity,
            action=action,
            actor=actor,
            details=dict(details or {}),
            correlation_id=correlation_id,
        )
        with self._data_lock:
            self.audit_events.append(event)
        return event

    def list_audit_events(
        self, *, category: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEvent]:
        with self._data_lock:
            return [
                e
                for e in self.audit_events
                if (category is None or e.category == category)
                and (action is None or e.action == action)
            ]
