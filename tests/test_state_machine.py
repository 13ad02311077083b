"""
Tests for the conversation state machine - app/state_machine/

Covers:
- State definitions and the transition table are consistent
- Guarded transitions (selection, cart, payable cart, payment reference)
- Transition actions (payment reference, purge, retry/error counters)
- Terminal state exits
- Configuration validation failures
"""
import re
from decimal import Decimal

import pytest

from app.core.exceptions import StateMachineConfigurationError
from app.state_machine.machine import StateMachine, get_state_machine
from app.state_machine.session import CartLine, CurrentOrder, SelectedProduct, SessionContext
from app.state_machine.states import (
    ConversationState,
    StateDefinition,
    StateTrigger,
    STATE_DEFINITIONS,
    SYSTEM_TRIGGERS,
)
from app.state_machine.transitions import (
    StateTransition,
    TRANSITIONS,
    generate_payment_reference,
)

S = ConversationState
T = StateTrigger


def _cart(*lines: tuple[int, str, str, int]) -> SessionContext:
    return SessionContext(
        current_order=CurrentOrder(items=tuple(
            CartLine(product_id=pid, name=name, unit_price=Decimal(price), quantity=qty)
            for pid, name, price, qty in lines
        ))
    )


@pytest.fixture
def machine() -> StateMachine:
    return StateMachine()


class TestConfiguration:
    """The shipped tables validate cleanly"""

    @pytest.mark.unit
    def test_default_configuration_is_valid(self, machine: StateMachine) -> None:
        is_valid, errors = machine.validate_configuration()
        assert is_valid is True
        assert errors == []

    @pytest.mark.unit
    def test_every_state_has_a_definition(self) -> None:
        assert set(STATE_DEFINITIONS) == set(ConversationState)

    @pytest.mark.unit
    def test_every_transition_target_is_allowed_by_its_source(self) -> None:
        for transition in TRANSITIONS:
            allowed = STATE_DEFINITIONS[transition.from_state].allowed_transitions
            assert transition.to_state in allowed, transition

    @pytest.mark.unit
    def test_initial_state_is_greeting(self, machine: StateMachine) -> None:
        assert machine.get_initial_state() == S.GREETING

    @pytest.mark.unit
    def test_only_order_complete_is_terminal(self, machine: StateMachine) -> None:
        terminal = [state for state in ConversationState if machine.is_terminal_state(state)]
        assert terminal == [S.ORDER_COMPLETE]

    @pytest.mark.unit
    def test_stats(self, machine: StateMachine) -> None:
        stats = machine.get_stats()
        assert stats["total_states"] == len(ConversationState)
        assert stats["total_transitions"] == len(TRANSITIONS)
        assert stats["terminal_states"] == 1
        assert stats["average_transitions_per_state"] == round(len(TRANSITIONS) / len(ConversationState), 2)

    @pytest.mark.unit
    def test_state_timeouts(self, machine: StateMachine) -> None:
        assert machine.get_state_timeout(S.AWAITING_PAYMENT) == 1800
        assert machine.get_state_timeout(S.ORDER_COMPLETE) == 60

    @pytest.mark.unit
    def test_singleton(self) -> None:
        assert get_state_machine() is get_state_machine()


class TestInvalidConfiguration:
    """A broken table fails at construction"""

    @pytest.mark.unit
    def test_missing_definition_raises(self) -> None:
        definitions = {k: v for k, v in STATE_DEFINITIONS.items() if k != S.COLLECTING_QUANTITY}
        transitions = [
            t for t in TRANSITIONS
            if S.COLLECTING_QUANTITY not in (t.from_state, t.to_state)
        ]
        definitions[S.BROWSING_PRODUCTS] = StateDefinition(
            state=S.BROWSING_PRODUCTS,
            description="browsing",
            allowed_transitions=frozenset({S.BROWSING_PRODUCTS, S.ADDING_TO_CART, S.GREETING}),
        )

        with pytest.raises(StateMachineConfigurationError) as exc_info:
            StateMachine(definitions=definitions, transitions=transitions)

        assert any("collecting_quantity" in error for error in exc_info.value.errors)

    @pytest.mark.unit
    def test_transition_to_disallowed_target_raises(self) -> None:
        bad = StateTransition(from_state=S.GREETING, to_state=S.ORDER_COMPLETE, trigger=T.PAYMENT_VERIFIED)

        with pytest.raises(StateMachineConfigurationError) as exc_info:
            StateMachine(transitions=[*TRANSITIONS, bad])

        assert any("not in the allowed transitions" in error for error in exc_info.value.errors)

    @pytest.mark.unit
    def test_terminal_state_without_exit_raises(self) -> None:
        transitions = [t for t in TRANSITIONS if t.from_state != S.ORDER_COMPLETE]

        with pytest.raises(StateMachineConfigurationError) as exc_info:
            StateMachine(transitions=transitions)

        assert any("has no exit transitions" in error for error in exc_info.value.errors)


class TestGuards:
    """Guards decide whether a matching transition may fire"""

    @pytest.mark.unit
    def test_add_to_cart_requires_selection(self, machine: StateMachine) -> None:
        result = machine.execute_transition(S.BROWSING_PRODUCTS, T.ADD_TO_CART, SessionContext())
        assert result.success is False
        assert result.error == (
            "No valid transition from state 'browsing_products' with trigger 'add_to_cart'"
        )

    @pytest.mark.unit
    def test_add_to_cart_with_selection(self, machine: StateMachine) -> None:
        context = SessionContext(selected_products=(
            SelectedProduct(product_id=1, name="Pizza", unit_price=Decimal("4500.00")),
        ))
        result = machine.execute_transition(S.BROWSING_PRODUCTS, T.ADD_TO_CART, context)
        assert result.success is True
        assert result.new_state == S.ADDING_TO_CART

    @pytest.mark.unit
    def test_review_requires_cart_items(self, machine: StateMachine) -> None:
        assert machine.execute_transition(S.ADDING_TO_CART, T.REVIEW_ORDER, SessionContext()).success is False

        result = machine.execute_transition(S.ADDING_TO_CART, T.REVIEW_ORDER, _cart((1, "Pizza", "4500.00", 1)))
        assert result.success is True
        assert result.new_state == S.REVIEWING_ORDER

    @pytest.mark.unit
    def test_confirm_requires_positive_total(self, machine: StateMachine) -> None:
        free = _cart((1, "Sample", "0.00", 1))
        assert machine.execute_transition(S.REVIEWING_ORDER, T.CONFIRM_ORDER, free).success is False

    @pytest.mark.unit
    def test_confirm_payment_requires_reference(self, machine: StateMachine) -> None:
        assert machine.execute_transition(S.AWAITING_PAYMENT, T.CONFIRM_PAYMENT, SessionContext()).success is False

        context = SessionContext(payment_reference="PAY-ABC-123456")
        result = machine.execute_transition(S.AWAITING_PAYMENT, T.CONFIRM_PAYMENT, context)
        assert result.success is True
        assert result.new_state == S.PAYMENT_CONFIRMATION

    @pytest.mark.unit
    def test_can_transition(self, machine: StateMachine) -> None:
        cart = _cart((1, "Pizza", "4500.00", 2))
        assert machine.can_transition(S.ADDING_TO_CART, S.REVIEWING_ORDER, T.REVIEW_ORDER, cart) is True
        assert machine.can_transition(S.ADDING_TO_CART, S.AWAITING_PAYMENT, T.REVIEW_ORDER, cart) is False
        assert machine.can_transition(
            S.ADDING_TO_CART, S.REVIEWING_ORDER, T.REVIEW_ORDER, SessionContext()
        ) is False

    @pytest.mark.unit
    def test_unmatched_trigger_leaves_context_untouched(self, machine: StateMachine) -> None:
        context = _cart((1, "Pizza", "4500.00", 1))
        result = machine.execute_transition(S.GREETING, T.CONFIRM_PAYMENT, context)
        assert result.success is False
        assert result.new_state is None
        assert result.context is None


class TestActions:
    """Pure context rewrites attached to transitions"""

    @pytest.mark.unit
    def test_confirm_order_mints_payment_reference(self, machine: StateMachine) -> None:
        context = _cart((1, "Pizza", "4500.00", 1)).model_copy(
            update={"order_validation_errors": ("old error",)}
        )
        result = machine.execute_transition(S.REVIEWING_ORDER, T.CONFIRM_ORDER, context)

        assert result.new_state == S.AWAITING_PAYMENT
        assert re.fullmatch(r"PAY-[A-Z0-9-]+", result.context.payment_reference)
        assert result.context.order_validation_errors == ()
        # The input context is not mutated
        assert context.payment_reference is None

    @pytest.mark.unit
    def test_payment_reference_format(self) -> None:
        references = {generate_payment_reference() for _ in range(50)}
        assert len(references) == 50
        for reference in references:
            prefix, stamp, suffix = reference.split("-")
            assert prefix == "PAY"
            assert re.fullmatch(r"[0-9A-Z]+", stamp)
            assert len(suffix) == 6

    @pytest.mark.unit
    def test_cancel_purges_order(self, machine: StateMachine) -> None:
        context = _cart((1, "Pizza", "4500.00", 1)).model_copy(update={
            "payment_reference": "PAY-X-ABCDEF",
            "order_id": 7,
            "customer_name": "Ada",
        })
        result = machine.execute_transition(S.AWAITING_PAYMENT, T.CANCEL_ORDER, context)

        assert result.new_state == S.GREETING
        assert result.context.current_order is None
        assert result.context.payment_reference is None
        assert result.context.order_id is None
        assert result.context.customer_name == "Ada"

    @pytest.mark.unit
    def test_payment_timeout_purges_and_counts_error(self, machine: StateMachine) -> None:
        context = _cart((1, "Pizza", "4500.00", 1)).model_copy(
            update={"payment_reference": "PAY-X-ABCDEF", "error_count": 1}
        )
        result = machine.execute_transition(S.AWAITING_PAYMENT, T.PAYMENT_TIMEOUT, context)

        assert result.new_state == S.GREETING
        assert result.context.error_count == 2
        assert result.context.current_order is None

    @pytest.mark.unit
    def test_payment_failed_counts_retry(self, machine: StateMachine) -> None:
        context = SessionContext(payment_reference="PAY-X-ABCDEF")
        result = machine.execute_transition(S.PAYMENT_CONFIRMATION, T.PAYMENT_FAILED, context)

        assert result.new_state == S.AWAITING_PAYMENT
        assert result.context.retry_count == 1
        assert result.context.payment_reference == "PAY-X-ABCDEF"

    @pytest.mark.unit
    def test_payment_verified_completes_order(self, machine: StateMachine) -> None:
        context = SessionContext(payment_reference="PAY-X-ABCDEF", retry_count=2)
        result = machine.execute_transition(S.PAYMENT_CONFIRMATION, T.PAYMENT_VERIFIED, context)

        assert result.new_state == S.ORDER_COMPLETE
        assert result.context.retry_count == 0


class TestTerminalState:
    """ORDER_COMPLETE only leaves through fresh starts"""

    @pytest.mark.unit
    @pytest.mark.parametrize("trigger, target", [
        (T.START_OVER, S.GREETING),
        (T.START_CONVERSATION, S.GREETING),
        (T.VIEW_PRODUCTS, S.BROWSING_PRODUCTS),
    ])
    def test_exits_clear_order_context(self, machine: StateMachine, trigger, target) -> None:
        context = _cart((1, "Pizza", "4500.00", 1)).model_copy(
            update={"payment_reference": "PAY-X-ABCDEF", "order_id": 3}
        )
        result = machine.execute_transition(S.ORDER_COMPLETE, trigger, context)

        assert result.success is True
        assert result.new_state == target
        assert result.context.current_order is None
        assert result.context.order_id is None

    @pytest.mark.unit
    @pytest.mark.parametrize("trigger", [T.ADD_TO_CART, T.CONFIRM_ORDER, T.PAYMENT_VERIFIED, T.GO_BACK])
    def test_other_triggers_rejected(self, machine: StateMachine, trigger) -> None:
        result = machine.execute_transition(S.ORDER_COMPLETE, trigger, SessionContext())
        assert result.success is False

    @pytest.mark.unit
    def test_available_triggers(self, machine: StateMachine) -> None:
        assert machine.get_available_triggers(S.ORDER_COMPLETE) == [
            T.START_OVER, T.START_CONVERSATION, T.VIEW_PRODUCTS,
        ]


class TestSystemTriggers:

    @pytest.mark.unit
    def test_system_triggers_are_declared(self) -> None:
        assert T.PAYMENT_VERIFIED in SYSTEM_TRIGGERS
        assert T.PAYMENT_FAILED in SYSTEM_TRIGGERS
        assert T.PAYMENT_TIMEOUT in SYSTEM_TRIGGERS
        assert T.CONFIRM_PAYMENT not in SYSTEM_TRIGGERS

    @pytest.mark.unit
    def test_session_timeout_resets_cart_states(self, machine: StateMachine) -> None:
        for state in (S.ADDING_TO_CART, S.REVIEWING_ORDER, S.AWAITING_PAYMENT):
            result = machine.execute_transition(state, T.SESSION_TIMEOUT, _cart((1, "Pizza", "4500.00", 1)))
            assert result.new_state == S.GREETING
            assert result.context.current_order is None
