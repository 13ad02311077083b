"""
Property-based tests with hypothesis.

Invariants checked:
1. The input parser never raises and always returns a well-formed result
2. Cart totals are the sum of their lines; order totals add up
3. Money rounding is idempotent and stays within half a cent
4. A transition decision depends only on (state, trigger, context)
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from hypothesis import HealthCheck, given, settings as h_settings
from hypothesis.strategies import (
    booleans,
    composite,
    decimals,
    integers,
    lists,
    none,
    sampled_from,
    text,
)

from app.domain.services.cart_service import CartService
from app.domain.services.input_parser import (
    DEFAULT_MENU,
    EntityType,
    InputParser,
    ParsingContext,
    UserIntent,
)
from app.state_machine.machine import get_state_machine
from app.state_machine.session import CartLine, CurrentOrder, SessionContext, quantize_money
from app.state_machine.states import ConversationState, StateTrigger

parser = InputParser()


# ============================================================================
# Strategies
# ============================================================================

STATES = sampled_from(list(ConversationState))

# Free text plus phrasing customers actually send
MESSAGES = text(max_size=300) | sampled_from([
    "hi", "menu", "1", "2 pizzas", "3 x burger", "remove salad", "cart",
    "confirm", "yes", "no", "paid", "ref PAY-ABC123-XYZ789", "cancel", "help",
    "back", "start over", "my name is Ada", "0", "i want 2 coffees please",
])

MONEY = decimals(min_value=Decimal("0.01"), max_value=Decimal("99999.99"), places=2)


@composite
def cart_lines(draw):
    """1-8 lines with distinct product ids"""
    count = draw(integers(min_value=1, max_value=8))
    return tuple(
        CartLine(
            product_id=product_id,
            name=f"Item {product_id}",
            unit_price=draw(MONEY),
            quantity=draw(integers(min_value=1, max_value=50)),
        )
        for product_id in range(1, count + 1)
    )


@composite
def session_contexts(draw):
    """Contexts covering the fields transition guards look at"""
    lines = draw(none() | cart_lines())
    return SessionContext(
        current_order=CurrentOrder(items=lines) if lines is not None else None,
        payment_reference=draw(none() | sampled_from(["PAY-ABC123-XYZ789"])),
        order_id=draw(none() | integers(min_value=1, max_value=1000)),
        customer_name=draw(none() | sampled_from(["Ada", "Tunde"])),
        is_new_customer=draw(booleans()),
        error_count=draw(integers(min_value=0, max_value=5)),
        retry_count=draw(integers(min_value=0, max_value=5)),
    )


# ============================================================================
# Input parser
# ============================================================================


class TestParserProperties:

    @pytest.mark.unit
    @given(message=MESSAGES, state=STATES)
    @h_settings(max_examples=300, suppress_health_check=[HealthCheck.too_slow])
    def test_never_raises_and_is_well_formed(self, message, state):
        parsed = parser.parse_input(message, ParsingContext(current_state=state))

        assert 0.0 <= parsed.confidence <= 1.0
        assert parsed.sanitized_text == parsed.sanitized_text.strip()
        assert "  " not in parsed.sanitized_text
        assert "<" not in parsed.sanitized_text
        if parsed.intent == UserIntent.UNKNOWN:
            assert parsed.trigger is None

    @pytest.mark.unit
    @given(message=MESSAGES)
    @h_settings(max_examples=200)
    def test_quantities_are_positive(self, message):
        parsed = parser.parse_input(message)

        for entity in InputParser.get_entities_by_type(parsed.entities, EntityType.QUANTITY):
            assert int(entity.value) > 0

    @pytest.mark.unit
    @given(choice=integers(min_value=1, max_value=len(DEFAULT_MENU)), state=STATES)
    def test_menu_number_selects_menu_item(self, choice, state):
        parsed = parser.parse_input(str(choice), ParsingContext(current_state=state))

        assert parsed.intent == UserIntent.ADD_TO_CART
        product = InputParser.get_entity_by_type(parsed.entities, EntityType.PRODUCT_NAME)
        assert product.value == DEFAULT_MENU[choice - 1]

    @pytest.mark.unit
    @given(message=text(max_size=100))
    def test_validation_and_sanitize_agree(self, message):
        result = parser.validate_input(message)

        if result.is_valid:
            assert result.sanitized_input == InputParser.sanitize(message)
        else:
            assert result.errors
            assert result.sanitized_input is None


# ============================================================================
# Cart arithmetic
# ============================================================================


class TestCartProperties:

    @pytest.mark.unit
    @given(lines=cart_lines())
    def test_order_total_is_sum_of_lines(self, lines):
        order = CurrentOrder(items=lines)

        expected = sum((line.unit_price * line.quantity for line in lines), Decimal("0"))
        assert order.total_amount == quantize_money(expected)
        assert order.item_count == sum(line.quantity for line in lines)

    @pytest.mark.unit
    @given(lines=cart_lines(), rate=sampled_from([Decimal("0"), Decimal("0.075"), Decimal("0.10")]))
    def test_summary_adds_up(self, lines, rate):
        service = CartService(catalog=MagicMock(), tax_rate=rate)
        context = SessionContext(current_order=CurrentOrder(items=lines))

        summary = service.get_summary(context)

        assert summary.subtotal == context.cart_total
        assert summary.tax == quantize_money(summary.subtotal * rate)
        assert summary.total == summary.subtotal + summary.tax
        assert summary.total >= summary.subtotal


# ============================================================================
# Money rounding
# ============================================================================


class TestMoneyProperties:

    @pytest.mark.unit
    @given(value=decimals(min_value=Decimal("-100000"), max_value=Decimal("100000"), places=6))
    def test_quantize_is_idempotent_and_close(self, value):
        rounded = quantize_money(value)

        assert quantize_money(rounded) == rounded
        assert rounded.as_tuple().exponent == -2
        assert abs(rounded - value) <= Decimal("0.005")


# ============================================================================
# State machine
# ============================================================================


class TestTransitionProperties:

    @pytest.mark.unit
    @given(state=STATES, trigger=sampled_from(list(StateTrigger)), context=session_contexts())
    @h_settings(max_examples=300, suppress_health_check=[HealthCheck.too_slow])
    def test_same_inputs_same_decision(self, state, trigger, context):
        machine = get_state_machine()
        before = context.model_dump()

        first = machine.execute_transition(state, trigger, context)
        second = machine.execute_transition(state, trigger, context)

        assert context.model_dump() == before
        assert first.success == second.success
        assert first.new_state == second.new_state
        assert first.error == second.error
        if first.success and trigger == StateTrigger.CONFIRM_ORDER:
            # Only the freshly minted payment reference may differ
            first_ctx = first.context.model_copy(update={"payment_reference": None})
            second_ctx = second.context.model_copy(update={"payment_reference": None})
            assert first_ctx == second_ctx
        else:
            assert first.context == second.context
