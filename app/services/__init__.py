from app.services.state_machine import (
    ConversationPhase,
    InvalidTransitionError,
    can_transition,
    is_terminal,
    transition,
)
from app.services.text_utils import matches_all_words, normalize
