from enum import Enum


class SessionMode(str, Enum):
    BOT = "bot"
    LIVE = "live"


VALID_TRANSITIONS = {
    SessionMode.BOT: [SessionMode.LIVE],
    SessionMode.LIVE: [SessionMode.BOT],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_mode: SessionMode, to_mode: SessionMode):
        self.from_mode = from_mode
        self.to_mode = to_mode
        super().__init__(f"Invalid transition: {from_mode.value} -> {to_mode.value}")


def can_transition(from_mode: SessionMode, to_mode: SessionMode) -> bool:
    """Check if transition is valid."""
    return to_mode in VALID_TRANSITIONS.get(from_mode, [])


def transition(from_mode: SessionMode, to_mode: SessionMode) -> SessionMode:
    """Perform mode transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_mode, to_mode):
        raise InvalidTransitionError(from_mode, to_mode)
    return to_mode


def mode_for_presence(operator_count: int) -> SessionMode:
    """Any present operator means the session is live."""
    return SessionMode.LIVE if operator_count > 0 else SessionMode.BOT


def operator_joined(current_mode: SessionMode) -> SessionMode:
    """First operator entered presence: bot hands the session over."""
    return transition(current_mode, SessionMode.LIVE)


def operator_left(current_mode: SessionMode) -> SessionMode:
    """Last operator left presence: bot resumes."""
    return transition(current_mode, SessionMode.BOT)
