"""
State Machine - guarded transition engine over the conversation states

Pure: no I/O. The orchestrator persists whatever context a transition returns.
"""
from collections import defaultdict
from dataclasses import dataclass

from app.core.exceptions import StateMachineConfigurationError
from app.core.logging import get_logger
from app.state_machine.session import SessionContext
from app.state_machine.states import (
    ConversationState,
    StateTrigger,
    StateDefinition,
    STATE_DEFINITIONS,
    INITIAL_STATE,
)
from app.state_machine.transitions import StateTransition, TRANSITIONS

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    new_state: ConversationState | None = None
    context: SessionContext | None = None
    error: str | None = None


class StateMachine:
    """Executes triggers against the static transition table.

    The configuration is validated on construction; an inconsistent table
    raises StateMachineConfigurationError so a broken deploy fails at startup.
    """

    def __init__(
        self,
        definitions: dict[ConversationState, StateDefinition] | None = None,
        transitions: list[StateTransition] | None = None,
    ):
        self._definitions = definitions if definitions is not None else STATE_DEFINITIONS
        self._transitions = transitions if transitions is not None else TRANSITIONS

        self._by_source_and_trigger: dict[tuple[ConversationState, StateTrigger], list[StateTransition]] = (
            defaultdict(list)
        )
        for transition in self._transitions:
            self._by_source_and_trigger[(transition.from_state, transition.trigger)].append(transition)

        is_valid, errors = self.validate_configuration()
        if not is_valid:
            logger.critical(
                "State machine configuration invalid",
                extra_data={"errors": errors}
            )
            raise StateMachineConfigurationError(errors)

        logger.info("State machine initialized", extra_data=self.get_stats())

    def can_transition(
        self,
        from_state: ConversationState,
        to_state: ConversationState,
        trigger: StateTrigger,
        context: SessionContext,
    ) -> bool:
        """True if some transition for (from_state, trigger) lands on to_state with its guard holding"""
        definition = self._definitions.get(from_state)
        if definition is None or to_state not in definition.allowed_transitions:
            return False

        return any(
            transition.to_state == to_state and self._guard_holds(transition, context)
            for transition in self._by_source_and_trigger.get((from_state, trigger), [])
        )

    def execute_transition(
        self,
        from_state: ConversationState,
        trigger: StateTrigger,
        context: SessionContext,
    ) -> TransitionResult:
        """Commit the first matching transition and return the rewritten context"""
        definition = self._definitions.get(from_state)
        if definition is None:
            return TransitionResult(success=False, error=f"Unknown state '{from_state}'")

        for transition in self._by_source_and_trigger.get((from_state, trigger), []):
            if transition.to_state not in definition.allowed_transitions:
                continue
            if not self._guard_holds(transition, context):
                continue

            new_context = transition.action(context) if transition.action else context

            logger.debug(
                "State transition",
                extra_data={
                    "from_state": from_state.value,
                    "to_state": transition.to_state.value,
                    "trigger": trigger.value,
                }
            )
            return TransitionResult(success=True, new_state=transition.to_state, context=new_context)

        return TransitionResult(
            success=False,
            error=f"No valid transition from state '{from_state.value}' with trigger '{trigger.value}'",
        )

    @staticmethod
    def _guard_holds(transition: StateTransition, context: SessionContext) -> bool:
        return transition.guard is None or transition.guard(context)

    def get_initial_state(self) -> ConversationState:
        return INITIAL_STATE

    def get_state_definition(self, state: ConversationState) -> StateDefinition | None:
        return self._definitions.get(state)

    def get_allowed_transitions(self, state: ConversationState) -> frozenset[ConversationState]:
        definition = self._definitions.get(state)
        return definition.allowed_transitions if definition else frozenset()

    def is_terminal_state(self, state: ConversationState) -> bool:
        definition = self._definitions.get(state)
        return bool(definition and definition.is_terminal)

    def get_state_timeout(self, state: ConversationState) -> int | None:
        definition = self._definitions.get(state)
        return definition.timeout_seconds if definition else None

    def get_available_triggers(self, state: ConversationState) -> list[StateTrigger]:
        """Triggers with at least one declared transition out of ``state``, in declaration order"""
        seen: list[StateTrigger] = []
        for transition in self._transitions:
            if transition.from_state == state and transition.trigger not in seen:
                seen.append(transition.trigger)
        return seen

    def get_stats(self) -> dict:
        total_states = len(self._definitions)
        return {
            "total_states": total_states,
            "total_transitions": len(self._transitions),
            "terminal_states": sum(1 for d in self._definitions.values() if d.is_terminal),
            "average_transitions_per_state": (
                round(len(self._transitions) / total_states, 2) if total_states else 0
            ),
        }

    def validate_configuration(self) -> tuple[bool, list[str]]:
        """Check the tables against each other.

        1. Every enum member has a definition.
        2. Every transition's endpoints are defined.
        3. Every transition's target is in its source's allowed list.
        4. Every allowed-transition target is defined.
        5. Terminal states have at least one exit.
        """
        errors: list[str] = []

        for state in ConversationState:
            if state not in self._definitions:
                errors.append(f"State '{state.value}' has no definition")

        for transition in self._transitions:
            label = f"{transition.from_state.value} --{transition.trigger.value}--> {transition.to_state.value}"
            if transition.from_state not in self._definitions:
                errors.append(f"Transition {label}: source state is not defined")
                continue
            if transition.to_state not in self._definitions:
                errors.append(f"Transition {label}: target state is not defined")
                continue
            if transition.to_state not in self._definitions[transition.from_state].allowed_transitions:
                errors.append(f"Transition {label}: target is not in the allowed transitions of the source")

        for state, definition in self._definitions.items():
            for target in definition.allowed_transitions:
                if target not in self._definitions:
                    errors.append(
                        f"State '{state.value}' allows transition to undefined state '{target.value}'"
                    )
            if definition.is_terminal and not self.get_available_triggers(state):
                errors.append(f"Terminal state '{state.value}' has no exit transitions")

        return (not errors, errors)


_state_machine: StateMachine | None = None


def get_state_machine() -> StateMachine:
    """Shared, validated state machine instance"""
    global _state_machine
    if _state_machine is None:
        _state_machine = StateMachine()
    return _state_machine
