"""Tests for the dialogue state machine and engine."""

import pytest

from core.conversation.orchestration import (
    DialogueConfig,
    DialogueEngine,
    DialogueStateMachine,
    StateTransitionRule,
    TransitionRules,
    RESPONSE_TEMPLATES,
    RESUME_RESPONSES,
)
from models.schemas import IntentResult


def intent(name, confidence, **entities):
    return IntentResult(intent=name, confidence=confidence, entities=entities)


class TestStateMachine:
    """Test rule resolution."""

    def test_first_matching_rule_wins(self):
        machine = DialogueStateMachine(initial_state="start")
        machine.add_rule("start", StateTransitionRule("question", "first", 0.5))
        machine.add_rule("start", StateTransitionRule("question", "second", 0.5))

        result = machine.resolve("start", "question", 0.9)

        assert result.to_state == "first"
        assert result.matched

    def test_no_match_is_identity(self):
        machine = TransitionRules.build_default_machine()

        result = machine.resolve("greeting", "complaint", 0.99)

        assert result.to_state == "greeting"
        assert result.actions == []
        assert not result.matched
        assert not result.changed

    def test_unknown_state_is_identity(self):
        machine = TransitionRules.build_default_machine()

        result = machine.resolve("nowhere", "farewell", 1.0)

        assert result.from_state == result.to_state == "nowhere"

    def test_threshold_is_inclusive(self):
        machine = TransitionRules.build_default_machine()

        assert machine.resolve("greeting", "farewell", 0.8).to_state == "farewell"
        assert machine.resolve("greeting", "farewell", 0.79).to_state == "greeting"

    def test_serialize(self):
        data = TransitionRules.build_default_machine().serialize()

        assert data["initial_state"] == "greeting"
        assert data["states"]["greeting"]["rules"][0]["intent"] == "help_request"


class TestProcessTurn:
    """Test turn processing against live sessions."""

    @pytest.mark.asyncio
    async def test_farewell_above_threshold_transitions(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")

        result = await dialogue_engine.process_turn(session.id, "再见", intent=intent("farewell", 0.9))

        assert result.state_before == "greeting"
        assert result.state_after == "farewell"
        assert result.transitioned
        assert result.actions == ["say_goodbye"]
        assert result.response in RESPONSE_TEMPLATES["farewell"]

        dialogue = dialogue_engine.get_dialogue(session.id)
        assert dialogue.current_state == "farewell"
        assert dialogue.state_transitions[-1].trigger == "farewell"
        assert session_store.get(session.id).context.current_state == "farewell"

    @pytest.mark.asyncio
    async def test_farewell_below_threshold_stays(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")

        result = await dialogue_engine.process_turn(session.id, "再见", intent=intent("farewell", 0.7))

        assert result.state_after == "greeting"
        assert not result.transitioned
        assert dialogue_engine.get_dialogue(session.id).state_transitions == []

    @pytest.mark.asyncio
    async def test_recognizes_intent_when_not_given(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")

        result = await dialogue_engine.process_turn(session.id, "你好")

        assert result.intent.intent == "greeting"
        assert result.intent.confidence == 0.9
        assert result.state_after == "greeting"
        assert result.response in RESPONSE_TEMPLATES["greeting"]

    @pytest.mark.asyncio
    async def test_question_moves_to_answering_with_time_prefix(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")

        result = await dialogue_engine.process_turn(session.id, "明天会下雨吗")

        assert result.intent.intent == "question"
        assert result.state_after == "answering"
        assert result.response.startswith("明天")
        assert result.response[len("明天"):] in RESPONSE_TEMPLATES["answering"]

    @pytest.mark.asyncio
    async def test_reply_uses_introduced_name(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")

        result = await dialogue_engine.process_turn(session.id, "我叫小明")

        assert "小明" in result.response
        assert dialogue_engine.get_dialogue(session.id).context.user_name == "小明"

    @pytest.mark.asyncio
    async def test_history_is_trimmed(self, session_store, intent_engine):
        engine = DialogueEngine(session_store, intent_engine, DialogueConfig(max_context_turns=3))
        session = await session_store.create("user-1")

        for text in ["你好", "什么是会员", "为什么", "谢谢", "帮助"]:
            await engine.process_turn(session.id, text)

        history = engine.get_dialogue(session.id).history
        assert len(history) == 3
        assert history[-1].user_input == "帮助"

    @pytest.mark.asyncio
    async def test_unknown_session(self, dialogue_engine):
        assert await dialogue_engine.process_turn("missing", "你好") is None

    @pytest.mark.asyncio
    async def test_recognition_context(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")
        await dialogue_engine.process_turn(session.id, "什么是会员")

        context = dialogue_engine.recognition_context(session.id)

        assert context["last_intent"] == "question"
        assert context["current_state"] == "answering"
        assert context["history"][0]["user_input"] == "什么是会员"


class TestInterruption:
    """Test interruption and resumption."""

    @pytest.mark.asyncio
    async def test_interrupt_and_resume(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")
        await dialogue_engine.process_turn(session.id, "什么是会员")

        assert await dialogue_engine.handle_interruption(session.id, "user_stop") is True

        dialogue = dialogue_engine.get_dialogue(session.id)
        assert dialogue.current_state == "answering"
        assert dialogue.context.interruption_reason == "user_stop"
        assert session_store.get(session.id).context.interrupted is True

        response = await dialogue_engine.resume_dialogue(session.id)

        assert response in RESUME_RESPONSES
        assert dialogue.context.interruption_reason is None
        assert session_store.get(session.id).context.interrupted is False

    @pytest.mark.asyncio
    async def test_interrupt_without_dialogue(self, dialogue_engine):
        assert await dialogue_engine.handle_interruption("missing", "user_stop") is False
        assert await dialogue_engine.resume_dialogue("missing") is None


class TestLifecycle:
    """Test dialogue cleanup and reporting."""

    @pytest.mark.asyncio
    async def test_dialogue_dropped_when_session_closes(self, session_store, dialogue_engine):
        session = await session_store.create("user-1")
        await dialogue_engine.process_turn(session.id, "你好")

        await session_store.terminate(session.id)

        assert dialogue_engine.get_dialogue(session.id) is None

    @pytest.mark.asyncio
    async def test_stats(self, session_store, dialogue_engine):
        first = await session_store.create("user-1")
        second = await session_store.create("user-2")
        await dialogue_engine.process_turn(first.id, "你好")
        await dialogue_engine.process_turn(first.id, "什么是会员")
        await dialogue_engine.process_turn(second.id, "你好")

        stats = dialogue_engine.get_stats()

        assert stats["total_dialogues"] == 2
        assert stats["average_turns"] == 1.5
        assert stats["top_intents"][0] == {"intent": "greeting", "count": 2}
        assert dialogue_engine.health_check() is True
