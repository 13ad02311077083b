"""
State Handlers - build the reply text for the state a message landed in
"""
from dataclasses import dataclass, field
from typing import Callable

from app.state_machine.session import SessionContext
from app.state_machine.states import ConversationState

GENERIC_APOLOGY = 'Sorry, I encountered an error. Please try again or type "help" for assistance.'
INVALID_INPUT_REPLY = "Sorry, I couldn't understand that message. Please send a short text reply."


class MessageResponse:
    """Response to be sent to user"""

    def __init__(self, text: str):
        self.text = text


@dataclass
class ReplyInput:
    """What a handler may read when rendering a reply"""
    context: SessionContext
    cart_text: str | None = None
    notices: list[str] = field(default_factory=list)


ReplyHandler = Callable[[ReplyInput], MessageResponse]


class StateReplyBuilder:
    """Renders replies per conversation state.

    The handler table must cover every state; a missing entry raises at
    construction time rather than at the first unlucky message.
    """

    def __init__(self, menu_items: list[str]):
        self.menu_items = menu_items
        self._handlers = self._build_handlers()
        missing = [state.value for state in ConversationState if state not in self._handlers]
        if missing:
            raise ValueError(f"Reply handlers missing for states: {', '.join(missing)}")

    def build(self, state: ConversationState, reply_input: ReplyInput) -> MessageResponse:
        response = self._handlers[state](reply_input)
        if reply_input.notices:
            response.text = "\n".join(reply_input.notices) + "\n\n" + response.text
        return response

    def not_understood(self, state: ConversationState) -> MessageResponse:
        hints = {
            ConversationState.GREETING: 'Type "menu" to see what we offer.',
            ConversationState.COLLECTING_NAME: "Please tell me your name.",
            ConversationState.MAIN_MENU: 'Type "menu" to start a new order.',
            ConversationState.BROWSING_PRODUCTS: f"Reply with an item number (1-{len(self.menu_items)}) or a product name.",
            ConversationState.ADDING_TO_CART: 'Add more items, or type "cart" to review your order.',
            ConversationState.COLLECTING_QUANTITY: "Please reply with a quantity, e.g. 2.",
            ConversationState.REVIEWING_ORDER: 'Type "confirm" to place the order or "back" to edit it.',
            ConversationState.AWAITING_PAYMENT: 'Type "paid" once you have made the payment.',
            ConversationState.PAYMENT_CONFIRMATION: "We're still verifying your payment. Hang tight!",
            ConversationState.ORDER_COMPLETE: 'Type "start over" to place another order.',
        }
        return MessageResponse(f"Sorry, I didn't understand that. {hints[state]}")

    def _build_handlers(self) -> dict[ConversationState, ReplyHandler]:
        return {
            ConversationState.GREETING: self._handle_greeting,
            ConversationState.COLLECTING_NAME: self._handle_collecting_name,
            ConversationState.MAIN_MENU: self._handle_main_menu,
            ConversationState.BROWSING_PRODUCTS: self._handle_browsing,
            ConversationState.ADDING_TO_CART: self._handle_adding_to_cart,
            ConversationState.COLLECTING_QUANTITY: self._handle_collecting_quantity,
            ConversationState.REVIEWING_ORDER: self._handle_reviewing,
            ConversationState.AWAITING_PAYMENT: self._handle_awaiting_payment,
            ConversationState.PAYMENT_CONFIRMATION: self._handle_payment_confirmation,
            ConversationState.ORDER_COMPLETE: self._handle_order_complete,
        }

    def _menu_text(self) -> str:
        return "\n".join(f"{index}. {name}" for index, name in enumerate(self.menu_items, start=1))

    # ==================== Entry ====================

    def _handle_greeting(self, reply_input: ReplyInput) -> MessageResponse:
        return MessageResponse(
            "Hello! Welcome to our ordering service.\n"
            'Type "menu" to see what we have, or "help" for instructions.'
        )

    def _handle_collecting_name(self, reply_input: ReplyInput) -> MessageResponse:
        return MessageResponse("Before we start, what's your name?")

    def _handle_main_menu(self, reply_input: ReplyInput) -> MessageResponse:
        name = reply_input.context.customer_name
        greeting = f"Welcome back, {name}!" if name else "Welcome back!"
        return MessageResponse(f'{greeting}\nType "menu" to start a new order.')

    # ==================== Catalog and cart ====================

    def _handle_browsing(self, reply_input: ReplyInput) -> MessageResponse:
        return MessageResponse(
            "Here's our menu:\n"
            f"{self._menu_text()}\n\n"
            'Reply with a number or a product name, e.g. "2 pizzas".'
        )

    def _handle_adding_to_cart(self, reply_input: ReplyInput) -> MessageResponse:
        cart_text = reply_input.cart_text or "Your cart is empty."
        return MessageResponse(
            f"{cart_text}\n\n"
            'Add more items, type "cart" to review, or "remove <item>" to take something out.'
        )

    def _handle_collecting_quantity(self, reply_input: ReplyInput) -> MessageResponse:
        return MessageResponse("How many would you like?")

    def _handle_reviewing(self, reply_input: ReplyInput) -> MessageResponse:
        errors = reply_input.context.order_validation_errors
        if errors:
            problems = "\n".join(f"- {error}" for error in errors)
            return MessageResponse(
                f"We couldn't place your order:\n{problems}\n\n"
                'Type "back" to edit your cart.'
            )
        cart_text = reply_input.cart_text or "Your cart is empty."
        return MessageResponse(
            f"Please review your order:\n{cart_text}\n\n"
            'Type "confirm" to place the order or "back" to make changes.'
        )

    # ==================== Payment ====================

    def _handle_awaiting_payment(self, reply_input: ReplyInput) -> MessageResponse:
        context = reply_input.context
        lines = ["Your order has been placed!"]
        if context.order_id is not None:
            lines.append(f"Order number: #{context.order_id}")
        if reply_input.cart_text:
            lines.append(reply_input.cart_text)
        lines.append(f"Payment reference: {context.payment_reference}")
        lines.append('Use this reference when paying, then type "paid".')
        return MessageResponse("\n".join(lines))

    def _handle_payment_confirmation(self, reply_input: ReplyInput) -> MessageResponse:
        return MessageResponse(
            f"Thanks! We're verifying payment {reply_input.context.payment_reference}. "
            "You'll get a confirmation shortly."
        )

    def _handle_order_complete(self, reply_input: ReplyInput) -> MessageResponse:
        order_id = reply_input.context.order_id
        suffix = f" #{order_id}" if order_id is not None else ""
        return MessageResponse(
            f"Payment confirmed. Your order{suffix} is complete. Thank you!\n"
            'Type "start over" to order again.'
        )
