"""
Default transition table and reply templates for the dialogue engine.

The table is ordered: within a state the first matching rule wins, so the
order of each list below is significant.
"""

from typing import Dict, List, Tuple
import logging

from .state_manager import DialogueStateMachine, StateTransitionRule

logger = logging.getLogger(__name__)


# state -> [(intent, target_state, min_confidence, actions)]
DEFAULT_TRANSITIONS: Dict[str, List[Tuple[str, str, float, List[str]]]] = {
    "greeting": [
        ("help_request", "help", 0.7, ["provide_help"]),
        ("question", "answering", 0.6, ["answer_question"]),
        ("farewell", "farewell", 0.8, ["say_goodbye"]),
    ],
    "help": [
        ("question", "answering", 0.6, ["answer_question"]),
        ("thanks", "greeting", 0.7, ["acknowledge_thanks"]),
    ],
    "answering": [
        ("question", "answering", 0.6, ["answer_question"]),
        ("thanks", "greeting", 0.7, ["acknowledge_thanks"]),
    ],
    "farewell": [
        ("greeting", "greeting", 0.8, ["greet_again"]),
    ],
}

STATE_DESCRIPTIONS = {
    "greeting": "问候状态",
    "help": "帮助状态",
    "answering": "回答状态",
    "farewell": "告别状态",
}

# Keyed by the state the dialogue lands in; "general" covers states without templates
RESPONSE_TEMPLATES: Dict[str, List[str]] = {
    "greeting": [
        "你好！很高兴见到你！有什么我可以帮助你的吗？",
        "嗨！我是你的AI助手，有什么问题尽管问我吧！",
        "你好呀！今天想聊什么呢？",
    ],
    "farewell": [
        "再见！期待下次与你聊天！",
        "拜拜！有需要随时找我哦！",
        "再见！祝你今天愉快！",
    ],
    "help": [
        "我可以帮助你回答问题、聊天交流、提供信息等。你想了解什么具体功能呢？",
        "我是你的AI助手，可以协助你处理各种问题。有什么特别想了解的吗？",
        "我可以和你聊天、回答问题、提供建议等。有什么需要帮助的吗？",
    ],
    "answering": [
        "这是一个很好的问题！让我来帮你解答。",
        "我理解你的问题，让我为你详细说明。",
        "这个问题很有意思，我来为你分析一下。",
    ],
    "general": [
        "我明白了，让我来回应你的话。",
        "好的，我理解你的意思。",
        "我听到了，让我来回复你。",
    ],
}

RESUME_RESPONSES = [
    "我们继续之前的对话吧！",
    "好的，让我们继续！",
    "没问题，我们接着聊！",
]


class TransitionRules:
    """Builders and lookups over the default dialogue tables"""

    @classmethod
    def build_default_machine(cls, initial_state: str = "greeting") -> DialogueStateMachine:
        machine = DialogueStateMachine("default", initial_state=initial_state)
        for state, rules in DEFAULT_TRANSITIONS.items():
            machine.add_state(
                state,
                STATE_DESCRIPTIONS.get(state, ""),
                [StateTransitionRule(intent, target, threshold, actions)
                 for intent, target, threshold, actions in rules],
            )
        logger.debug(f"Built default dialogue machine with states {machine.states}")
        return machine

    @classmethod
    def templates_for(cls, state: str) -> List[str]:
        return RESPONSE_TEMPLATES.get(state) or RESPONSE_TEMPLATES["general"]

    @classmethod
    def get_transition_reason(cls, from_state: str, to_state: str, intent: str) -> str:
        """Human-readable reason for a recorded transition"""
        if from_state == to_state:
            return f"Stayed in {from_state} on {intent}"
        return f"Moved from {from_state} to {to_state} on {intent}"
