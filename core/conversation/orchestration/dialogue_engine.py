"""
Dialogue engine.

Keeps exactly one DialogueState per live session and advances it one turn
per user message: recognize intent, resolve a transition against the state
machine, pick and personalize a reply template for the resulting state, then
record the turn. Dialogue state is referenced by session id and dropped when
the session store reports the session closed.
"""

import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from core.conversation.context.session_store import SessionClosed, SessionStore
from core.conversation.understanding.engine import IntentKnowledgeEngine
from models.schemas import DialogueContext, IntentResult, new_id
from .state_manager import DialogueStateMachine, TransitionResult
from .transitions import RESUME_RESPONSES, TransitionRules

logger = logging.getLogger(__name__)

MAX_RECORDED_TRANSITIONS = 100


@dataclass
class DialogueConfig:
    max_context_turns: int = 10
    initial_state: str = "greeting"
    # "lexical" uses the keyword rules alone, "fused" runs all three strategies
    recognition_mode: str = "lexical"
    enable_interruption: bool = True


@dataclass(frozen=True)
class DialogueTurn:
    """One processed exchange; never modified after it is recorded"""
    id: str
    user_input: str
    intent: str
    entities: Dict[str, Any]
    system_response: str
    state_before: str
    state_after: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StateTransition:
    from_state: str
    to_state: str
    trigger: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DialogueState:
    id: str
    session_id: str
    current_state: str
    context: DialogueContext
    created_at: datetime
    last_update: datetime
    history: List[DialogueTurn] = field(default_factory=list)
    pending_actions: List[str] = field(default_factory=list)
    state_transitions: List[StateTransition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "current_state": self.current_state,
            "context": self.context.model_dump(mode="json"),
            "pending_actions": list(self.pending_actions),
            "created_at": self.created_at.isoformat(),
            "last_update": self.last_update.isoformat(),
            "history": [
                {
                    "id": turn.id,
                    "user_input": turn.user_input,
                    "intent": turn.intent,
                    "system_response": turn.system_response,
                    "state_before": turn.state_before,
                    "state_after": turn.state_after,
                    "timestamp": turn.timestamp.isoformat(),
                }
                for turn in self.history
            ],
            "state_transitions": [
                {
                    "from_state": t.from_state,
                    "to_state": t.to_state,
                    "trigger": t.trigger,
                    "timestamp": t.timestamp.isoformat(),
                }
                for t in self.state_transitions
            ],
        }


@dataclass
class TurnResult:
    response: str
    intent: IntentResult
    state_before: str
    state_after: str
    actions: List[str]
    transitioned: bool
    turn: DialogueTurn


class DialogueEngine:
    """Per-session turn-taking state machine driver"""

    def __init__(self, session_store: SessionStore, intent_engine: IntentKnowledgeEngine,
                 config: Optional[DialogueConfig] = None,
                 state_machine: Optional[DialogueStateMachine] = None,
                 rng: Optional[random.Random] = None):
        self.session_store = session_store
        self.intent_engine = intent_engine
        self.config = config or DialogueConfig()
        self.state_machine = state_machine or TransitionRules.build_default_machine(self.config.initial_state)
        self.rng = rng or random.Random()
        self._dialogues: Dict[str, DialogueState] = {}

        self._closed_subscription = session_store.session_closed.subscribe(self._on_session_closed)

    def _now(self) -> datetime:
        return self.session_store.scheduler.now()

    # ------------------------------------------------------------------
    # Dialogue lifecycle
    # ------------------------------------------------------------------

    async def create_dialogue(self, session_id: str, initial_state: Optional[str] = None) -> Optional[DialogueState]:
        if self.session_store.get(session_id) is None:
            return None

        existing = self._dialogues.get(session_id)
        if existing:
            return existing

        now = self._now()
        dialogue = DialogueState(
            id=new_id(),
            session_id=session_id,
            current_state=initial_state or self.state_machine.initial_state,
            context=DialogueContext(),
            created_at=now,
            last_update=now,
        )
        self._dialogues[session_id] = dialogue

        await self.session_store.update_context(session_id, {
            "dialogue_id": dialogue.id,
            "current_state": dialogue.current_state,
        })
        logger.info(f"Created dialogue {dialogue.id} for session {session_id} in state {dialogue.current_state}")
        return dialogue

    def get_dialogue(self, session_id: str) -> Optional[DialogueState]:
        return self._dialogues.get(session_id)

    def discard(self, session_id: str) -> bool:
        return self._dialogues.pop(session_id, None) is not None

    def _on_session_closed(self, event: SessionClosed) -> None:
        if self.discard(event.session.id):
            logger.debug(f"Discarded dialogue for closed session {event.session.id}")

    def recognition_context(self, session_id: str) -> Dict[str, Any]:
        """Context handed to the recognizer: prior turns and the last intent"""
        dialogue = self._dialogues.get(session_id)
        if not dialogue:
            return {"history": [], "last_intent": None}
        return {
            "history": [{"intent": t.intent, "user_input": t.user_input} for t in dialogue.history],
            "last_intent": dialogue.context.last_intent,
            "current_state": dialogue.current_state,
        }

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def process_turn(self, session_id: str, user_input: str,
                           intent: Optional[IntentResult] = None) -> Optional[TurnResult]:
        """
        Advance the dialogue by one user message.

        Returns None when the session is not live. An intent that matches no
        rule leaves the state unchanged and records no transition.
        """
        if self.session_store.get(session_id) is None:
            return None

        dialogue = self._dialogues.get(session_id) or await self.create_dialogue(session_id)
        if dialogue is None:
            return None

        if intent is None:
            intent = await self.intent_engine.recognize_intent(
                user_input,
                context=self.recognition_context(session_id),
                session_id=session_id,
                mode=self.config.recognition_mode,
            )

        state_before = dialogue.current_state
        transition = self.state_machine.resolve(state_before, intent.intent, intent.confidence)

        user_name = intent.entities.get("user_name")
        if user_name:
            dialogue.context.user_name = user_name

        response = self.render_response(transition.to_state, dialogue.context, intent.entities)
        now = self._now()

        if transition.matched:
            self._record_transition(dialogue, transition, intent, now)

        turn = DialogueTurn(
            id=new_id(),
            user_input=user_input,
            intent=intent.intent,
            entities=dict(intent.entities),
            system_response=response,
            state_before=state_before,
            state_after=transition.to_state,
            timestamp=now,
            metadata={"confidence": intent.confidence, "actions": list(transition.actions)},
        )
        dialogue.history.append(turn)
        if len(dialogue.history) > self.config.max_context_turns:
            dialogue.history = dialogue.history[-self.config.max_context_turns:]

        dialogue.current_state = transition.to_state
        dialogue.pending_actions = list(transition.actions)
        dialogue.last_update = now
        dialogue.context.last_intent = intent.intent
        dialogue.context.last_entities = dict(intent.entities)
        dialogue.context.last_response = response

        await self.session_store.update_context(session_id, {
            "dialogue_id": dialogue.id,
            "current_state": dialogue.current_state,
            "last_intent": intent.intent,
        })

        return TurnResult(
            response=response,
            intent=intent,
            state_before=state_before,
            state_after=transition.to_state,
            actions=list(transition.actions),
            transitioned=transition.matched,
            turn=turn,
        )

    def _record_transition(self, dialogue: DialogueState, transition: TransitionResult,
                           intent: IntentResult, now: datetime) -> None:
        dialogue.state_transitions.append(StateTransition(
            from_state=transition.from_state,
            to_state=transition.to_state,
            trigger=intent.intent,
            timestamp=now,
            metadata={
                "confidence": intent.confidence,
                "actions": list(transition.actions),
                "reason": TransitionRules.get_transition_reason(
                    transition.from_state, transition.to_state, intent.intent
                ),
            },
        ))
        if len(dialogue.state_transitions) > MAX_RECORDED_TRANSITIONS:
            dialogue.state_transitions = dialogue.state_transitions[-MAX_RECORDED_TRANSITIONS:]
        logger.info(
            f"Dialogue transition: {transition.from_state} -> {transition.to_state}",
            extra={"session_id": dialogue.session_id, "trigger": intent.intent},
        )

    def render_response(self, state: str, context: DialogueContext, entities: Dict[str, Any]) -> str:
        """Pick a template for the state and personalize it"""
        response = self.rng.choice(TransitionRules.templates_for(state))

        if context.user_name:
            response = response.replace("你", context.user_name, 1)

        times = entities.get("time") or []
        if times:
            first = str(times[0])
            if "今天" in first or "today" in first:
                response = f"今天{response}"
            elif "明天" in first or "tomorrow" in first:
                response = f"明天{response}"

        return response

    # ------------------------------------------------------------------
    # Interruption
    # ------------------------------------------------------------------

    async def handle_interruption(self, session_id: str, reason: str) -> bool:
        """Remember why the dialogue was interrupted; the state is left alone"""
        if not self.config.enable_interruption:
            return False
        dialogue = self._dialogues.get(session_id)
        if not dialogue:
            return False

        dialogue.context.interruption_reason = reason
        dialogue.context.interrupted_at = self._now()

        await self.session_store.update_context(session_id, {
            "dialogue_id": dialogue.id,
            "interrupted": True,
            "interruption_reason": reason,
        })
        logger.info(f"Dialogue for session {session_id} interrupted: {reason}")
        return True

    async def resume_dialogue(self, session_id: str) -> Optional[str]:
        """Clear the interruption and return a neutral continuation reply"""
        dialogue = self._dialogues.get(session_id)
        if not dialogue:
            return None

        dialogue.context.interruption_reason = None
        dialogue.context.interrupted_at = None

        await self.session_store.update_context(session_id, {
            "dialogue_id": dialogue.id,
            "interrupted": False,
            "interruption_reason": None,
        })
        return self.rng.choice(RESUME_RESPONSES)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        dialogues = list(self._dialogues.values())
        intents = Counter(turn.intent for d in dialogues for turn in d.history)
        total_turns = sum(len(d.history) for d in dialogues)
        return {
            "total_dialogues": len(dialogues),
            "active_dialogues": sum(1 for d in dialogues if d.current_state != "farewell"),
            "average_turns": total_turns / len(dialogues) if dialogues else 0.0,
            "top_intents": [
                {"intent": intent, "count": count} for intent, count in intents.most_common(5)
            ],
        }

    def health_check(self) -> bool:
        return self.state_machine.has_state(self.state_machine.initial_state)
