"""
Verification session transitions.

Pure functions from one SessionState to the next:

    idle -> resolving -> verifying -> result
    result(partial) -> verifying          (unlock with an access key)
    result -> verifying                   (retry the same input)
    any -> idle                           (reset, channel switch)

Every move that starts a new request bumps `generation`; a completion
carrying an older generation is stale and leaves the state untouched.
"""

import logging
from typing import Optional

from docverify.models.schemas import (
    Channel,
    Notice,
    NotFound,
    Phase,
    ResolvedInput,
    SessionState,
    Tier,
)

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """The requested action is not allowed in the current phase."""

    def __init__(self, action: str, phase: Phase, reason: str = ""):
        self.action = action
        self.phase = phase
        message = f"Cannot {action} while {phase.value}"
        super().__init__(f"{message}: {reason}" if reason else message)


MISSING_IDENTIFIER = Notice(
    code="missing_identifier",
    message="Please enter a document ID",
    action="enter_identifier",
)


def resolve(state: SessionState, resolved: ResolvedInput) -> SessionState:
    """A channel produced input. Supersedes any request still in flight."""
    if state.phase == Phase.RESULT:
        raise InvalidTransition("resolve a new document", state.phase, "reset first")

    return state.model_copy(update={
        "phase": Phase.RESOLVING,
        "resolved": resolved,
        "outcome": None,
        "notice": None,
        "generation": state.generation + 1,
    })


def begin_verification(state: SessionState) -> SessionState:
    if state.phase != Phase.RESOLVING:
        raise InvalidTransition("start verification", state.phase)
    return state.model_copy(update={"phase": Phase.VERIFYING})


def complete(state: SessionState, generation: int, outcome) -> SessionState:
    """Apply a verification outcome, unless a newer request replaced it."""
    if generation != state.generation or state.phase != Phase.VERIFYING:
        logger.debug(
            f"Dropping stale outcome: generation={generation}, "
            f"current={state.generation}, phase={state.phase.value}"
        )
        return state

    notice = None
    if isinstance(outcome, NotFound):
        notice = Notice(code="not_found", message=outcome.reason, action="retry")

    return state.model_copy(update={
        "phase": Phase.RESULT,
        "outcome": outcome,
        "notice": notice,
    })


def unlock(state: SessionState, secret: Optional[str]) -> SessionState:
    """Re-verify the held identifier with an access key."""
    if state.phase != Phase.RESULT or state.tier != Tier.PARTIAL:
        raise InvalidTransition("unlock", state.phase, "only a partial result can be unlocked")

    upgraded = state.resolved.with_secret(secret)
    if upgraded.secret is None:
        raise InvalidTransition("unlock", state.phase, "an access key is required")

    return state.model_copy(update={
        "phase": Phase.VERIFYING,
        "resolved": upgraded,
        "outcome": None,
        "notice": None,
        "generation": state.generation + 1,
    })


def retry(state: SessionState) -> SessionState:
    """Verify the held input again, without re-resolving it."""
    if state.phase != Phase.RESULT or state.resolved is None:
        raise InvalidTransition("retry", state.phase)

    return state.model_copy(update={
        "phase": Phase.VERIFYING,
        "outcome": None,
        "notice": None,
        "generation": state.generation + 1,
    })


def reset(state: SessionState, channel: Optional[Channel] = None) -> SessionState:
    """Back to idle. Always allowed; discards input and outcome."""
    return SessionState(
        active_channel=channel or state.active_channel,
        generation=state.generation + 1,
    )


def select_channel(state: SessionState, channel: Channel) -> SessionState:
    """Switch acquisition channel, starting over from idle."""
    if channel == state.active_channel and state.phase == Phase.IDLE:
        return state.model_copy(update={"notice": None})
    return reset(state, channel)


def with_notice(state: SessionState, notice: Notice) -> SessionState:
    """Surface an acquisition or input problem; nothing else changes."""
    return state.model_copy(update={"notice": notice})
