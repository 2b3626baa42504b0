"""Conversation orchestration components"""

from .state_manager import DialogueStateMachine, StateTransitionRule, TransitionResult
from .transitions import TransitionRules, RESPONSE_TEMPLATES, RESUME_RESPONSES
from .dialogue_engine import (
    DialogueConfig,
    DialogueEngine,
    DialogueState,
    DialogueTurn,
    StateTransition,
    TurnResult,
)

__all__ = [
    'DialogueStateMachine',
    'StateTransitionRule',
    'TransitionResult',
    'TransitionRules',
    'RESPONSE_TEMPLATES',
    'RESUME_RESPONSES',
    'DialogueConfig',
    'DialogueEngine',
    'DialogueState',
    'DialogueTurn',
    'StateTransition',
    'TurnResult',
]
