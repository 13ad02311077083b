"""
State Machine Module for the Ordering Conversation
"""
from app.state_machine.states import ConversationState, StateTrigger, StateDefinition
from app.state_machine.machine import StateMachine, TransitionResult, get_state_machine
from app.state_machine.session import ConversationSession, SessionContext

__all__ = [
    "ConversationState",
    "StateTrigger",
    "StateDefinition",
    "StateMachine",
    "TransitionResult",
    "get_state_machine",
    "ConversationSession",
    "SessionContext",
]
