from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from examauth.service.errors import TokenReuseDetected


class SessionPhase(str, Enum):
    IDLE = "idle"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    VERIFIED = "verified"
    STATE_ISSUED = "state_issued"
    CALLBACK_RECEIVED = "callback_received"
    STATE_VALIDATED = "state_validated"
    CODE_EXCHANGED = "code_exchanged"
    USER_RESOLVED = "user_resolved"
    TOKENS_ISSUED = "tokens_issued"
    ROTATION_REQUESTED = "rotation_requested"
    ROTATION_SUCCEEDED = "rotation_succeeded"
    REPLAY_DETECTED = "replay_detected"
    ROTATION_FAILED = "rotation_failed"
    LOGIN_FAILED = "login_failed"
    SSO_FAILED = "sso_failed"
    LOGGED_OUT = "logged_out"


P = SessionPhase

ALLOWED_TRANSITIONS: Dict[SessionPhase, FrozenSet[SessionPhase]] = {
    P.IDLE: frozenset({P.CREDENTIALS_SUBMITTED, P.STATE_ISSUED, P.LOGGED_OUT}),
    P.CREDENTIALS_SUBMITTED: frozenset({P.VERIFIED, P.LOGIN_FAILED}),
    P.VERIFIED: frozenset({P.TOKENS_ISSUED, P.LOGIN_FAILED}),
    P.STATE_ISSUED: frozenset({P.CALLBACK_RECEIVED, P.SSO_FAILED}),
    P.CALLBACK_RECEIVED: frozenset({P.STATE_VALIDATED, P.SSO_FAILED}),
    P.STATE_VALIDATED: frozenset({P.CODE_EXCHANGED, P.SSO_FAILED}),
    P.CODE_EXCHANGED: frozenset({P.USER_RESOLVED, P.SSO_FAILED}),
    P.USER_RESOLVED: frozenset({P.TOKENS_ISSUED, P.SSO_FAILED}),
    P.TOKENS_ISSUED: frozenset({P.ROTATION_REQUESTED, P.LOGGED_OUT}),
    P.ROTATION_REQUESTED: frozenset(
        {P.ROTATION_SUCCEEDED, P.REPLAY_DETECTED, P.ROTATION_FAILED}
    ),
}

FAILURE_PHASES = frozenset(
    {P.LOGIN_FAILED, P.SSO_FAILED, P.ROTATION_FAILED, P.REPLAY_DETECTED}
)

_LOGIN_BRANCH = frozenset({P.CREDENTIALS_SUBMITTED, P.VERIFIED})
_SSO_BRANCH = frozenset(
    {P.STATE_ISSUED, P.CALLBACK_RECEIVED, P.STATE_VALIDATED, P.CODE_EXCHANGED, P.USER_RESOLVED}
)


class InvalidTransition(RuntimeError):
    def __init__(self, current: SessionPhase, target: SessionPhase) -> None:
        super().__init__(f"illegal session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class SessionFlow:
    """Tracks one request's walk through the session state machine.

    Each HTTP request is a separate flow: an SSO callback starts from
    ``STATE_ISSUED`` (the state was issued by an earlier request) and a
    refresh starts from ``TOKENS_ISSUED``.
    """

    def __init__(self, start: SessionPhase = SessionPhase.IDLE) -> None:
        self.phase = start
        self.trace: List[str] = [start.value]
        self.error_code: Optional[str] = None

    @classmethod
    def for_callback(cls) -> "SessionFlow":
        return cls(SessionPhase.STATE_ISSUED)

    @classmethod
    def for_refresh(cls) -> "SessionFlow":
        return cls(SessionPhase.TOKENS_ISSUED)

    @property
    def terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS.get(self.phase)

    @property
    def failed(self) -> bool:
        return self.phase in FAILURE_PHASES

    def advance(self, target: SessionPhase) -> SessionPhase:
        if target not in ALLOWED_TRANSITIONS.get(self.phase, frozenset()):
            raise InvalidTransition(self.phase, target)
        self.phase = target
        self.trace.append(target.value)
        return target

    def failure_phase_for(self, error: BaseException) -> SessionPhase:
        if self.phase in _LOGIN_BRANCH:
            return P.LOGIN_FAILED
        if self.phase in _SSO_BRANCH:
            return P.SSO_FAILED
        if self.phase == P.ROTATION_REQUESTED:
            if isinstance(error, TokenReuseDetected):
                return P.REPLAY_DETECTED
            return P.ROTATION_FAILED
        raise InvalidTransition(self.phase, P.ROTATION_FAILED)

    def fail(self, error: BaseException) -> SessionPhase:
        """Move to the failure terminal matching the current branch."""
        target = self.advance(self.failure_phase_for(error))
        self.error_code = getattr(error, "error_code", None) or type(error).__name__
        return target
