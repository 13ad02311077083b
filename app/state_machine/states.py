"""
State Definitions for the Ordering Conversation Flow
"""
from dataclasses import dataclass, field
from enum import Enum


class ConversationState(str, Enum):
    """States of the ordering conversation"""

    # Entry
    GREETING = "greeting"
    COLLECTING_NAME = "collecting_name"
    MAIN_MENU = "main_menu"

    # Catalog and cart
    BROWSING_PRODUCTS = "browsing_products"
    ADDING_TO_CART = "adding_to_cart"
    COLLECTING_QUANTITY = "collecting_quantity"
    REVIEWING_ORDER = "reviewing_order"

    # Payment
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_CONFIRMATION = "payment_confirmation"

    # Terminal
    ORDER_COMPLETE = "order_complete"


class StateTrigger(str, Enum):
    """Events that move a conversation between states"""

    # User actions
    START_CONVERSATION = "start_conversation"
    VIEW_PRODUCTS = "view_products"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    REVIEW_ORDER = "review_order"
    CONFIRM_ORDER = "confirm_order"
    CANCEL_ORDER = "cancel_order"
    MAKE_PAYMENT = "make_payment"
    CONFIRM_PAYMENT = "confirm_payment"
    REQUEST_HELP = "request_help"

    # System events
    PAYMENT_TIMEOUT = "payment_timeout"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    ORDER_COMPLETED = "order_completed"
    SESSION_TIMEOUT = "session_timeout"
    ERROR_OCCURRED = "error_occurred"

    # Navigation
    GO_BACK = "go_back"
    START_OVER = "start_over"


# Triggers raised by collaborators (payment verifier, schedulers), never parsed from text
SYSTEM_TRIGGERS = frozenset({
    StateTrigger.PAYMENT_TIMEOUT,
    StateTrigger.PAYMENT_VERIFIED,
    StateTrigger.PAYMENT_FAILED,
    StateTrigger.ORDER_COMPLETED,
    StateTrigger.SESSION_TIMEOUT,
    StateTrigger.ERROR_OCCURRED,
})


@dataclass(frozen=True)
class StateDefinition:
    """Static description of one state"""
    state: ConversationState
    description: str
    allowed_transitions: frozenset[ConversationState] = field(default_factory=frozenset)
    is_terminal: bool = False
    # Inactivity timeout in seconds. Informational: drives reminder/expiry policy,
    # the engine itself never fires it.
    timeout_seconds: int | None = None


INITIAL_STATE = ConversationState.GREETING

_S = ConversationState

# Valid target states per source state
CONVERSATION_TRANSITIONS: dict[ConversationState, list[ConversationState]] = {
    _S.GREETING: [_S.GREETING, _S.BROWSING_PRODUCTS, _S.COLLECTING_NAME],
    _S.COLLECTING_NAME: [_S.MAIN_MENU, _S.GREETING],
    _S.MAIN_MENU: [_S.MAIN_MENU, _S.BROWSING_PRODUCTS, _S.GREETING],
    _S.BROWSING_PRODUCTS: [
        _S.BROWSING_PRODUCTS, _S.ADDING_TO_CART, _S.COLLECTING_QUANTITY, _S.GREETING,
    ],
    _S.ADDING_TO_CART: [
        _S.ADDING_TO_CART, _S.BROWSING_PRODUCTS, _S.REVIEWING_ORDER, _S.GREETING,
    ],
    _S.COLLECTING_QUANTITY: [_S.ADDING_TO_CART, _S.BROWSING_PRODUCTS, _S.GREETING],
    _S.REVIEWING_ORDER: [
        _S.REVIEWING_ORDER, _S.ADDING_TO_CART, _S.BROWSING_PRODUCTS,
        _S.AWAITING_PAYMENT, _S.GREETING,
    ],
    _S.AWAITING_PAYMENT: [
        _S.AWAITING_PAYMENT, _S.PAYMENT_CONFIRMATION, _S.REVIEWING_ORDER, _S.GREETING,
    ],
    _S.PAYMENT_CONFIRMATION: [
        _S.PAYMENT_CONFIRMATION, _S.ORDER_COMPLETE, _S.AWAITING_PAYMENT, _S.GREETING,
    ],
    _S.ORDER_COMPLETE: [_S.GREETING, _S.BROWSING_PRODUCTS],
}


_DESCRIPTIONS: dict[ConversationState, str] = {
    _S.GREETING: "Welcome message and onboarding",
    _S.COLLECTING_NAME: "Asking a new customer for their name",
    _S.MAIN_MENU: "Returning customer main menu",
    _S.BROWSING_PRODUCTS: "Customer is browsing the product menu",
    _S.ADDING_TO_CART: "Customer is building the cart",
    _S.COLLECTING_QUANTITY: "Asking how many of the selected product",
    _S.REVIEWING_ORDER: "Customer is reviewing the cart before confirming",
    _S.AWAITING_PAYMENT: "Waiting for the customer to pay",
    _S.PAYMENT_CONFIRMATION: "Payment reported, waiting for verification",
    _S.ORDER_COMPLETE: "Order paid and complete",
}

_TIMEOUTS: dict[ConversationState, int] = {
    _S.GREETING: 300,
    _S.COLLECTING_NAME: 300,
    _S.MAIN_MENU: 600,
    _S.BROWSING_PRODUCTS: 600,
    _S.ADDING_TO_CART: 300,
    _S.COLLECTING_QUANTITY: 300,
    _S.REVIEWING_ORDER: 300,
    _S.AWAITING_PAYMENT: 1800,
    _S.PAYMENT_CONFIRMATION: 300,
    _S.ORDER_COMPLETE: 60,
}

TERMINAL_STATES = frozenset({_S.ORDER_COMPLETE})

STATE_DEFINITIONS: dict[ConversationState, StateDefinition] = {
    state: StateDefinition(
        state=state,
        description=_DESCRIPTIONS[state],
        allowed_transitions=frozenset(targets),
        is_terminal=state in TERMINAL_STATES,
        timeout_seconds=_TIMEOUTS[state],
    )
    for state, targets in CONVERSATION_TRANSITIONS.items()
}
