"""
Transition Table - guarded transitions with pure context actions

Candidates for a (state, trigger) pair are tried in declaration order; the
first one whose target is allowed and whose guard holds wins.
"""
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable

from app.state_machine.session import SessionContext
from app.state_machine.states import ConversationState, StateTrigger

Guard = Callable[[SessionContext], bool]
Action = Callable[[SessionContext], SessionContext]

_BASE36 = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class StateTransition:
    from_state: ConversationState
    to_state: ConversationState
    trigger: StateTrigger
    guard: Guard | None = None
    action: Action | None = None
    description: str = ""


# --- Guards ---

def has_selected_products(context: SessionContext) -> bool:
    return len(context.selected_products) > 0


def has_cart_items(context: SessionContext) -> bool:
    return len(context.cart_items) > 0


def has_payable_cart(context: SessionContext) -> bool:
    return has_cart_items(context) and context.cart_total > 0


def has_payment_reference(context: SessionContext) -> bool:
    return bool(context.payment_reference)


# --- Actions ---

def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_payment_reference() -> str:
    """PAY-<base36 epoch millis>-<6 random base36 chars>, upper-case"""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"PAY-{stamp}-{suffix}"


def assign_payment_reference(context: SessionContext) -> SessionContext:
    return context.model_copy(update={
        "payment_reference": generate_payment_reference(),
        "order_validation_errors": (),
    })


def purge_order(context: SessionContext) -> SessionContext:
    return context.model_copy(update={
        "current_order": None,
        "selected_products": (),
        "payment_reference": None,
        "order_id": None,
        "order_validation_errors": (),
    })


def record_payment_timeout(context: SessionContext) -> SessionContext:
    return purge_order(context).model_copy(update={"error_count": context.error_count + 1})


def record_payment_failure(context: SessionContext) -> SessionContext:
    return context.model_copy(update={"retry_count": context.retry_count + 1})


def reset_payment_attempts(context: SessionContext) -> SessionContext:
    return context.model_copy(update={"retry_count": 0})


_S = ConversationState
_T = StateTrigger


def _t(from_state, trigger, to_state, guard=None, action=None, description="") -> StateTransition:
    return StateTransition(
        from_state=from_state,
        to_state=to_state,
        trigger=trigger,
        guard=guard,
        action=action,
        description=description,
    )


TRANSITIONS: list[StateTransition] = [
    # Greeting
    _t(_S.GREETING, _T.START_CONVERSATION, _S.GREETING, description="Show welcome"),
    _t(_S.GREETING, _T.REQUEST_HELP, _S.GREETING),
    _t(_S.GREETING, _T.VIEW_PRODUCTS, _S.BROWSING_PRODUCTS),
    _t(_S.GREETING, _T.START_OVER, _S.GREETING, action=purge_order),

    # Name collection (new customers)
    _t(_S.COLLECTING_NAME, _T.START_CONVERSATION, _S.MAIN_MENU),
    _t(_S.COLLECTING_NAME, _T.GO_BACK, _S.GREETING),
    _t(_S.COLLECTING_NAME, _T.START_OVER, _S.GREETING, action=purge_order),

    # Main menu (returning customers)
    _t(_S.MAIN_MENU, _T.START_CONVERSATION, _S.MAIN_MENU),
    _t(_S.MAIN_MENU, _T.REQUEST_HELP, _S.MAIN_MENU),
    _t(_S.MAIN_MENU, _T.VIEW_PRODUCTS, _S.BROWSING_PRODUCTS),
    _t(_S.MAIN_MENU, _T.GO_BACK, _S.GREETING),
    _t(_S.MAIN_MENU, _T.START_OVER, _S.GREETING, action=purge_order),

    # Browsing
    _t(_S.BROWSING_PRODUCTS, _T.ADD_TO_CART, _S.ADDING_TO_CART, guard=has_selected_products,
       description="Add the selected product"),
    _t(_S.BROWSING_PRODUCTS, _T.VIEW_PRODUCTS, _S.BROWSING_PRODUCTS),
    _t(_S.BROWSING_PRODUCTS, _T.REQUEST_HELP, _S.BROWSING_PRODUCTS),
    _t(_S.BROWSING_PRODUCTS, _T.GO_BACK, _S.GREETING),
    _t(_S.BROWSING_PRODUCTS, _T.START_OVER, _S.GREETING, action=purge_order),

    # Quantity collection
    _t(_S.COLLECTING_QUANTITY, _T.ADD_TO_CART, _S.ADDING_TO_CART, guard=has_selected_products),
    _t(_S.COLLECTING_QUANTITY, _T.GO_BACK, _S.BROWSING_PRODUCTS),
    _t(_S.COLLECTING_QUANTITY, _T.START_OVER, _S.GREETING, action=purge_order),

    # Cart
    _t(_S.ADDING_TO_CART, _T.ADD_TO_CART, _S.ADDING_TO_CART, guard=has_selected_products),
    _t(_S.ADDING_TO_CART, _T.REMOVE_FROM_CART, _S.ADDING_TO_CART, guard=has_cart_items),
    _t(_S.ADDING_TO_CART, _T.VIEW_PRODUCTS, _S.BROWSING_PRODUCTS),
    _t(_S.ADDING_TO_CART, _T.REVIEW_ORDER, _S.REVIEWING_ORDER, guard=has_cart_items),
    _t(_S.ADDING_TO_CART, _T.CONFIRM_ORDER, _S.REVIEWING_ORDER, guard=has_cart_items),
    _t(_S.ADDING_TO_CART, _T.REQUEST_HELP, _S.ADDING_TO_CART),
    _t(_S.ADDING_TO_CART, _T.GO_BACK, _S.BROWSING_PRODUCTS),
    _t(_S.ADDING_TO_CART, _T.CANCEL_ORDER, _S.GREETING, action=purge_order),
    _t(_S.ADDING_TO_CART, _T.SESSION_TIMEOUT, _S.GREETING, action=purge_order),
    _t(_S.ADDING_TO_CART, _T.START_OVER, _S.GREETING, action=purge_order),

    # Review
    _t(_S.REVIEWING_ORDER, _T.CONFIRM_ORDER, _S.AWAITING_PAYMENT, guard=has_payable_cart,
       action=assign_payment_reference, description="Confirm order and issue payment reference"),
    _t(_S.REVIEWING_ORDER, _T.REVIEW_ORDER, _S.REVIEWING_ORDER),
    _t(_S.REVIEWING_ORDER, _T.ADD_TO_CART, _S.ADDING_TO_CART, guard=has_selected_products),
    _t(_S.REVIEWING_ORDER, _T.REMOVE_FROM_CART, _S.ADDING_TO_CART, guard=has_cart_items),
    _t(_S.REVIEWING_ORDER, _T.VIEW_PRODUCTS, _S.BROWSING_PRODUCTS),
    _t(_S.REVIEWING_ORDER, _T.REQUEST_HELP, _S.REVIEWING_ORDER),
    _t(_S.REVIEWING_ORDER, _T.GO_BACK, _S.ADDING_TO_CART),
    _t(_S.REVIEWING_ORDER, _T.CANCEL_ORDER, _S.GREETING, action=purge_order),
    _t(_S.REVIEWING_ORDER, _T.SESSION_TIMEOUT, _S.GREETING, action=purge_order),
    _t(_S.REVIEWING_ORDER, _T.START_OVER, _S.GREETING, action=purge_order),

    # Payment
    _t(_S.AWAITING_PAYMENT, _T.CONFIRM_PAYMENT, _S.PAYMENT_CONFIRMATION, guard=has_payment_reference,
       description="Customer reports payment"),
    _t(_S.AWAITING_PAYMENT, _T.MAKE_PAYMENT, _S.AWAITING_PAYMENT, description="Repeat payment details"),
    _t(_S.AWAITING_PAYMENT, _T.REQUEST_HELP, _S.AWAITING_PAYMENT),
    _t(_S.AWAITING_PAYMENT, _T.GO_BACK, _S.REVIEWING_ORDER),
    _t(_S.AWAITING_PAYMENT, _T.PAYMENT_TIMEOUT, _S.GREETING, action=record_payment_timeout),
    _t(_S.AWAITING_PAYMENT, _T.CANCEL_ORDER, _S.GREETING, action=purge_order),
    _t(_S.AWAITING_PAYMENT, _T.SESSION_TIMEOUT, _S.GREETING, action=purge_order),
    _t(_S.AWAITING_PAYMENT, _T.START_OVER, _S.GREETING, action=purge_order),

    _t(_S.PAYMENT_CONFIRMATION, _T.PAYMENT_VERIFIED, _S.ORDER_COMPLETE, action=reset_payment_attempts),
    _t(_S.PAYMENT_CONFIRMATION, _T.ORDER_COMPLETED, _S.ORDER_COMPLETE, action=reset_payment_attempts),
    _t(_S.PAYMENT_CONFIRMATION, _T.PAYMENT_FAILED, _S.AWAITING_PAYMENT, action=record_payment_failure),
    _t(_S.PAYMENT_CONFIRMATION, _T.CONFIRM_PAYMENT, _S.PAYMENT_CONFIRMATION, description="Status check"),
    _t(_S.PAYMENT_CONFIRMATION, _T.REQUEST_HELP, _S.PAYMENT_CONFIRMATION),
    _t(_S.PAYMENT_CONFIRMATION, _T.GO_BACK, _S.AWAITING_PAYMENT),
    _t(_S.PAYMENT_CONFIRMATION, _T.CANCEL_ORDER, _S.GREETING, action=purge_order),
    _t(_S.PAYMENT_CONFIRMATION, _T.START_OVER, _S.GREETING, action=purge_order),

    # Terminal: only fresh starts leave
    _t(_S.ORDER_COMPLETE, _T.START_OVER, _S.GREETING, action=purge_order),
    _t(_S.ORDER_COMPLETE, _T.START_CONVERSATION, _S.GREETING, action=purge_order),
    _t(_S.ORDER_COMPLETE, _T.VIEW_PRODUCTS, _S.BROWSING_PRODUCTS, action=purge_order),
]
