"""
Turn-level dialogue state machine.

States are plain names registered on a DialogueStateMachine, each with an
ordered list of StateTransitionRule objects. Resolution scans the current
state's rules in registration order and takes the first one whose intent
matches exactly and whose confidence threshold is met. When nothing matches
the dialogue stays where it is and no actions are produced, so unintelligible
input is ignored rather than treated as an error.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Any, List
import logging

logger = logging.getLogger(__name__)


class StateTransitionRule:
    """One outgoing edge of a state, triggered by an intent"""

    def __init__(self, intent: str, target_state: str, min_confidence: float,
                 actions: Optional[List[str]] = None, should_continue: bool = True):
        self.intent = intent
        self.target_state = target_state
        self.min_confidence = min_confidence
        self.actions = list(actions or [])
        self.should_continue = should_continue

    def matches(self, intent: str, confidence: float) -> bool:
        return intent == self.intent and confidence >= self.min_confidence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "target_state": self.target_state,
            "min_confidence": self.min_confidence,
            "actions": list(self.actions),
            "should_continue": self.should_continue,
        }

    def __repr__(self) -> str:
        return f"StateTransitionRule({self.intent!r} -> {self.target_state!r} @ {self.min_confidence})"


@dataclass
class TransitionResult:
    """Outcome of resolving one intent against one state"""
    from_state: str
    to_state: str
    actions: List[str] = field(default_factory=list)
    rule: Optional[StateTransitionRule] = None

    @property
    def matched(self) -> bool:
        return self.rule is not None

    @property
    def changed(self) -> bool:
        return self.from_state != self.to_state


@dataclass
class StateDefinition:
    name: str
    description: str = ""
    rules: List[StateTransitionRule] = field(default_factory=list)


class DialogueStateMachine:
    """
    Named collection of states and their transition rules.

    The table belongs to one engine instance and is shared by every dialogue
    that engine drives; per-session position lives in DialogueState.
    """

    def __init__(self, name: str = "default", initial_state: str = "greeting"):
        self.name = name
        self.initial_state = initial_state
        self._states: Dict[str, StateDefinition] = {}

    def add_state(self, name: str, description: str = "",
                  rules: Optional[List[StateTransitionRule]] = None) -> StateDefinition:
        state = self._states.get(name)
        if state is None:
            state = StateDefinition(name=name, description=description)
            self._states[name] = state
        for rule in rules or []:
            state.rules.append(rule)
        return state

    def add_rule(self, from_state: str, rule: StateTransitionRule) -> None:
        self.add_state(from_state).rules.append(rule)

    def has_state(self, name: str) -> bool:
        return name in self._states

    @property
    def states(self) -> List[str]:
        return list(self._states)

    def resolve(self, state: str, intent: str, confidence: float) -> TransitionResult:
        """First matching rule wins; otherwise an identity transition"""
        definition = self._states.get(state)
        if definition is None:
            logger.warning(f"Unknown dialogue state '{state}' in machine {self.name}")
            return TransitionResult(from_state=state, to_state=state)

        for rule in definition.rules:
            if rule.matches(intent, confidence):
                return TransitionResult(
                    from_state=state,
                    to_state=rule.target_state,
                    actions=list(rule.actions),
                    rule=rule,
                )

        return TransitionResult(from_state=state, to_state=state)

    def serialize(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "initial_state": self.initial_state,
            "states": {
                name: {
                    "description": definition.description,
                    "rules": [rule.to_dict() for rule in definition.rules],
                }
                for name, definition in self._states.items()
            },
        }
