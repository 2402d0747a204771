"""Session state machine transitions."""

import pytest

from examauth.service.errors import (
    InvalidCredentials,
    StateExpired,
    TokenExpiredOrRevoked,
    TokenReuseDetected,
)
from examauth.service.flow import InvalidTransition, SessionFlow, SessionPhase


def test_login_happy_path():
    flow = SessionFlow()
    for phase in (
        SessionPhase.CREDENTIALS_SUBMITTED,
        SessionPhase.VERIFIED,
        SessionPhase.TOKENS_ISSUED,
        SessionPhase.ROTATION_REQUESTED,
        SessionPhase.ROTATION_SUCCEEDED,
    ):
        flow.advance(phase)

    assert flow.terminal
    assert not flow.failed
    assert flow.trace[0] == "idle"
    assert flow.trace[-1] == "rotation_succeeded"


def test_illegal_transition_rejected():
    flow = SessionFlow()
    with pytest.raises(InvalidTransition):
        flow.advance(SessionPhase.TOKENS_ISSUED)
    assert flow.phase == SessionPhase.IDLE


def test_cannot_skip_state_validation():
    flow = SessionFlow.for_callback()
    flow.advance(SessionPhase.CALLBACK_RECEIVED)
    with pytest.raises(InvalidTransition):
        flow.advance(SessionPhase.CODE_EXCHANGED)


@pytest.mark.parametrize(
    "start,error,expected",
    [
        (SessionPhase.CREDENTIALS_SUBMITTED, InvalidCredentials(), SessionPhase.LOGIN_FAILED),
        (SessionPhase.VERIFIED, InvalidCredentials(), SessionPhase.LOGIN_FAILED),
        (SessionPhase.CALLBACK_RECEIVED, StateExpired(), SessionPhase.SSO_FAILED),
        (SessionPhase.USER_RESOLVED, StateExpired(), SessionPhase.SSO_FAILED),
        (SessionPhase.ROTATION_REQUESTED, TokenReuseDetected(), SessionPhase.REPLAY_DETECTED),
        (SessionPhase.ROTATION_REQUESTED, TokenExpiredOrRevoked(), SessionPhase.ROTATION_FAILED),
    ],
)
def test_failure_terminal_matches_branch(start, error, expected):
    flow = SessionFlow(start)

    assert flow.fail(error) == expected
    assert flow.failed
    assert flow.terminal
    assert flow.error_code == error.error_code


def test_terminal_phase_cannot_fail_again():
    flow = SessionFlow.for_refresh()
    flow.advance(SessionPhase.ROTATION_REQUESTED)
    flow.fail(TokenExpiredOrRevoked())

    with pytest.raises(InvalidTransition):
        flow.fail(TokenExpiredOrRevoked())


def test_logout_from_idle_and_tokens_issued():
    SessionFlow().advance(SessionPhase.LOGGED_OUT)
    flow = SessionFlow.for_refresh()
    flow.advance(SessionPhase.LOGGED_OUT)
    assert flow.terminal and not flow.failed
