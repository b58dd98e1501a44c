from enum import Enum


class ConversationPhase(str, Enum):
    GREETING = "GREETING"
    DISCOVERY = "DISCOVERY"
    CATALOG_SENT = "CATALOG_SENT"
    CONFIRMATION = "CONFIRMATION"
    CLOSING = "CLOSING"


VALID_TRANSITIONS = {
    ConversationPhase.GREETING: [
        ConversationPhase.DISCOVERY,
        ConversationPhase.CATALOG_SENT,
        ConversationPhase.CONFIRMATION,
    ],
    ConversationPhase.DISCOVERY: [ConversationPhase.CATALOG_SENT, ConversationPhase.CONFIRMATION],
    ConversationPhase.CATALOG_SENT: [ConversationPhase.DISCOVERY, ConversationPhase.CONFIRMATION],
    ConversationPhase.CONFIRMATION: [ConversationPhase.CLOSING],
    ConversationPhase.CLOSING: [],  # restart only through an explicit reset
}

# Phases a conversation may not fall back to while an order summary awaits confirmation.
REGRESSION_PHASES = {ConversationPhase.GREETING, ConversationPhase.DISCOVERY}


class InvalidTransitionError(Exception):
    def __init__(self, from_phase: ConversationPhase, to_phase: ConversationPhase):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(f"Invalid transition: {from_phase.value} -> {to_phase.value}")


def can_transition(
    from_phase: ConversationPhase,
    to_phase: ConversationPhase,
    *,
    order_in_progress: bool = False,
) -> bool:
    """Check if transition is valid. Same-phase moves are never transitions."""
    if from_phase == to_phase:
        return False
    if order_in_progress and to_phase in REGRESSION_PHASES:
        return False
    allowed = VALID_TRANSITIONS.get(from_phase, [])
    return to_phase in allowed


def transition(
    from_phase: ConversationPhase,
    to_phase: ConversationPhase,
    *,
    order_in_progress: bool = False,
) -> ConversationPhase:
    """Perform phase transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_phase, to_phase, order_in_progress=order_in_progress):
        raise InvalidTransitionError(from_phase, to_phase)
    return to_phase


def is_terminal(phase: ConversationPhase) -> bool:
    return not VALID_TRANSITIONS.get(phase)
