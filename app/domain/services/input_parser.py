"""
Input Parser - turns free chat text into an intent, typed entities and a trigger

Pattern and keyword matching only. Rules are evaluated in a fixed order and
phrases match on word boundaries, so "hi" does not fire inside "this".
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from app.core.config import settings
from app.core.exceptions import StateMachineConfigurationError
from app.core.logging import get_logger
from app.core.validation import TextSanitizer
from app.state_machine.states import ConversationState, StateTrigger

logger = get_logger(__name__)

# Positional menu: "1" selects the first entry
DEFAULT_MENU: tuple[str, ...] = ("Pizza", "Burger", "Salad", "Coffee", "Soda")


class UserIntent(str, Enum):
    START_CONVERSATION = "start_conversation"
    GREETING = "greeting"
    VIEW_MENU = "view_menu"
    VIEW_PRODUCTS = "view_products"
    SEARCH_PRODUCT = "search_product"
    GET_PRODUCT_INFO = "get_product_info"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    VIEW_CART = "view_cart"
    CLEAR_CART = "clear_cart"
    CONFIRM_ORDER = "confirm_order"
    CANCEL_ORDER = "cancel_order"
    MAKE_PAYMENT = "make_payment"
    CONFIRM_PAYMENT = "confirm_payment"
    CHECK_PAYMENT_STATUS = "check_payment_status"
    GO_BACK = "go_back"
    START_OVER = "start_over"
    GET_HELP = "get_help"
    YES = "yes"
    NO = "no"
    THANK_YOU = "thank_you"
    GOODBYE = "goodbye"
    UNKNOWN = "unknown"


class EntityType(str, Enum):
    PRODUCT_NAME = "product_name"
    PRODUCT_ID = "product_id"
    QUANTITY = "quantity"
    PHONE_NUMBER = "phone_number"
    PAYMENT_REFERENCE = "payment_reference"
    AMOUNT = "amount"
    CUSTOMER_NAME = "customer_name"


@dataclass(frozen=True)
class InputEntity:
    type: EntityType
    value: str
    confidence: float


@dataclass(frozen=True)
class ParsingContext:
    current_state: ConversationState = ConversationState.GREETING


@dataclass
class ParsedInput:
    original_text: str
    sanitized_text: str
    intent: UserIntent
    entities: list[InputEntity] = field(default_factory=list)
    confidence: float = 0.0
    trigger: StateTrigger | None = None


@dataclass
class InputValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    sanitized_input: str | None = None


# ==================== Contextual yes/no ====================

def contextual_yes_trigger(state: ConversationState) -> StateTrigger:
    # Payment verification only ever comes from the payment collaborator;
    # "yes" while verifying is treated as a status check.
    return {
        ConversationState.ADDING_TO_CART: StateTrigger.REVIEW_ORDER,
        ConversationState.REVIEWING_ORDER: StateTrigger.CONFIRM_ORDER,
        ConversationState.AWAITING_PAYMENT: StateTrigger.MAKE_PAYMENT,
        ConversationState.PAYMENT_CONFIRMATION: StateTrigger.CONFIRM_PAYMENT,
        ConversationState.ORDER_COMPLETE: StateTrigger.START_OVER,
    }.get(state, StateTrigger.START_CONVERSATION)


def contextual_no_trigger(state: ConversationState) -> StateTrigger:
    return {
        ConversationState.REVIEWING_ORDER: StateTrigger.GO_BACK,
        ConversationState.AWAITING_PAYMENT: StateTrigger.CANCEL_ORDER,
        ConversationState.PAYMENT_CONFIRMATION: StateTrigger.GO_BACK,
    }.get(state, StateTrigger.START_OVER)


TriggerResolver = StateTrigger | Callable[[ConversationState], StateTrigger] | None

INTENT_TRIGGERS: dict[UserIntent, TriggerResolver] = {
    UserIntent.START_CONVERSATION: StateTrigger.START_CONVERSATION,
    UserIntent.GREETING: StateTrigger.START_CONVERSATION,
    UserIntent.VIEW_MENU: StateTrigger.VIEW_PRODUCTS,
    UserIntent.VIEW_PRODUCTS: StateTrigger.VIEW_PRODUCTS,
    UserIntent.SEARCH_PRODUCT: StateTrigger.VIEW_PRODUCTS,
    UserIntent.GET_PRODUCT_INFO: StateTrigger.VIEW_PRODUCTS,
    UserIntent.ADD_TO_CART: StateTrigger.ADD_TO_CART,
    UserIntent.REMOVE_FROM_CART: StateTrigger.REMOVE_FROM_CART,
    UserIntent.VIEW_CART: StateTrigger.REVIEW_ORDER,
    UserIntent.CLEAR_CART: StateTrigger.CANCEL_ORDER,
    UserIntent.CONFIRM_ORDER: StateTrigger.CONFIRM_ORDER,
    UserIntent.CANCEL_ORDER: StateTrigger.CANCEL_ORDER,
    UserIntent.MAKE_PAYMENT: StateTrigger.MAKE_PAYMENT,
    UserIntent.CONFIRM_PAYMENT: StateTrigger.CONFIRM_PAYMENT,
    UserIntent.CHECK_PAYMENT_STATUS: StateTrigger.CONFIRM_PAYMENT,
    UserIntent.GO_BACK: StateTrigger.GO_BACK,
    UserIntent.START_OVER: StateTrigger.START_OVER,
    UserIntent.GET_HELP: StateTrigger.REQUEST_HELP,
    UserIntent.YES: contextual_yes_trigger,
    UserIntent.NO: contextual_no_trigger,
    UserIntent.THANK_YOU: StateTrigger.START_OVER,
    UserIntent.GOODBYE: StateTrigger.START_OVER,
    UserIntent.UNKNOWN: None,
}

_unmapped = [intent.value for intent in UserIntent if intent not in INTENT_TRIGGERS]
if _unmapped:
    raise StateMachineConfigurationError([f"Intent '{i}' has no trigger mapping" for i in _unmapped])


# ==================== Phrase families ====================

# Order matters: more specific families come before the ones they overlap with
# ("confirm payment" before "confirm", "clear cart" before "cart").
PHRASE_RULES: list[tuple[UserIntent, tuple[str, ...]]] = [
    (UserIntent.CONFIRM_PAYMENT, ("paid", "payment done", "sent payment", "transferred", "confirm payment",
                                  "made payment", "made the payment")),
    (UserIntent.CHECK_PAYMENT_STATUS, ("payment status", "check payment", "payment received")),
    (UserIntent.MAKE_PAYMENT, ("pay", "payment", "how to pay", "payment details", "pay now")),
    (UserIntent.CLEAR_CART, ("clear cart", "clear my cart", "empty cart", "empty my cart", "remove all")),
    (UserIntent.CONFIRM_ORDER, ("confirm", "yes confirm", "place order", "place my order", "proceed", "checkout")),
    (UserIntent.CANCEL_ORDER, ("cancel", "cancel order", "stop")),
    (UserIntent.REMOVE_FROM_CART, ("remove", "delete", "take out", "remove from cart", "dont want")),
    (UserIntent.START_OVER, ("start over", "restart", "begin again", "new order")),
    (UserIntent.GO_BACK, ("back", "go back", "previous")),
    (UserIntent.GET_HELP, ("help", "how to", "what do i do", "commands")),
    (UserIntent.VIEW_MENU, ("menu", "show menu", "view menu", "what can i order")),
    (UserIntent.VIEW_PRODUCTS, ("products", "show products", "what do you have", "catalog", "show items")),
    (UserIntent.GET_PRODUCT_INFO, ("tell me about", "how much is", "price of")),
    (UserIntent.SEARCH_PRODUCT, ("search", "find", "look for")),
    (UserIntent.ADD_TO_CART, ("add", "i want", "buy", "get me", "add to cart", "i would like", "id like")),
]

# Checked after the menu-keyword rule so "pizza please" is an add, not a courtesy
LATE_PHRASE_RULES: list[tuple[UserIntent, tuple[str, ...]]] = [
    (UserIntent.VIEW_CART, ("cart", "my order", "what do i have", "show cart", "view cart")),
    (UserIntent.GREETING, ("hi", "hello", "hey", "good morning", "good afternoon", "good evening")),
    (UserIntent.YES, ("yes", "yeah", "yep", "ok", "okay", "sure")),
    (UserIntent.NO, ("no", "nope", "not now")),
    (UserIntent.THANK_YOU, ("thanks", "thank you", "appreciate")),
    (UserIntent.GOODBYE, ("bye", "goodbye", "see you", "later")),
]

_FALLBACK_STOP_WORDS = frozenset({
    "i", "want", "to", "order", "buy", "get", "me", "a", "an", "the", "some", "add",
    "remove", "delete", "take", "out", "dont", "please", "cart", "from", "of", "and",
    "my", "like", "would", "id", "search", "find", "look", "for", "tell", "about",
    "how", "much", "is", "price", "pieces", "piece", "items", "item", "more",
})

_PHONE_RE = re.compile(r"(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")
_PAYMENT_REF_RE = re.compile(r"PAY-[A-Z0-9-]+", re.IGNORECASE)
_AMOUNT_RE = re.compile(r"\$?(\d+(?:\.\d{2})?)")
_QUANTITY_RE = re.compile(r"(?<![\w.-])(\d{1,3})\s*(?:x|pieces?|items?)?(?![\d.])")
_OPTION_RE = re.compile(r"\boption\s*(\d+)\b")
_PRODUCT_ID_RE = re.compile(r"\bproduct\s+(?:id\s+)?(\d+)\b")
_CUSTOMER_NAME_RE = re.compile(r"\b(?:my name is|call me)\s+([a-z][a-z .'-]{1,60})$")
_ORDER_VERB_RE = re.compile(r"^order\b")


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)")


class InputParser:
    """Rule-based parser. ``menu`` fixes the numbered selections 1..N."""

    def __init__(self, menu: tuple[str, ...] | list[str] = DEFAULT_MENU, max_length: int | None = None):
        if not menu or len(menu) > 9:
            raise StateMachineConfigurationError(
                [f"Menu must have between 1 and 9 entries, got {len(menu)}"]
            )
        self.menu = tuple(menu)
        self.max_length = max_length or settings.MAX_INPUT_LENGTH

        self._rules = [
            (intent, [_phrase_pattern(p) for p in phrases]) for intent, phrases in PHRASE_RULES
        ]
        self._late_rules = [
            (intent, [_phrase_pattern(p) for p in phrases]) for intent, phrases in LATE_PHRASE_RULES
        ]
        names = "|".join(re.escape(name.lower()) for name in self.menu)
        self._menu_keyword_re = re.compile(rf"(?<!\w)({names})(?:e?s)?(?!\w)")
        self._bare_digit_re = re.compile(rf"^[0-{len(self.menu)}]$")
        self._quantity_item_re = re.compile(rf"^(\d{{1,3}})\s*x?\s*({names})(?:e?s)?$")

    # ==================== Public API ====================

    def parse_input(self, text: str, context: ParsingContext | None = None) -> ParsedInput:
        """Parse one message. Never raises: failures degrade to UNKNOWN with confidence 0."""
        context = context or ParsingContext()
        sanitized = ""
        try:
            sanitized = self.sanitize(text)
            intent = self.detect_intent(sanitized, context)
            entities = self.extract_entities(sanitized, intent)
            trigger = self.map_intent_to_trigger(intent, context.current_state)
            confidence = self.calculate_confidence(intent, entities, sanitized)
        except Exception as e:
            logger.error(
                "Input parsing failed",
                extra_data={"error": str(e), "state": context.current_state.value},
                exc_info=True
            )
            return ParsedInput(
                original_text=text or "",
                sanitized_text=sanitized,
                intent=UserIntent.UNKNOWN,
                confidence=0.0,
            )

        return ParsedInput(
            original_text=text,
            sanitized_text=sanitized,
            intent=intent,
            entities=entities,
            confidence=confidence,
            trigger=trigger,
        )

    def validate_input(self, text: str) -> InputValidationResult:
        errors: list[str] = []

        if not text or not text.strip():
            errors.append("Input cannot be empty")
        elif len(text) > self.max_length:
            errors.append(f"Input is too long (maximum {self.max_length} characters)")

        is_safe, _ = TextSanitizer.check_for_markup(text or "")
        if not is_safe:
            errors.append("Input contains potentially harmful content")

        return InputValidationResult(
            is_valid=not errors,
            errors=errors,
            sanitized_input=self.sanitize(text) if not errors else None,
        )

    @staticmethod
    def get_entity_by_type(entities: list[InputEntity], entity_type: EntityType) -> InputEntity | None:
        return next((entity for entity in entities if entity.type == entity_type), None)

    @staticmethod
    def get_entities_by_type(entities: list[InputEntity], entity_type: EntityType) -> list[InputEntity]:
        return [entity for entity in entities if entity.type == entity_type]

    # ==================== Pipeline ====================

    @staticmethod
    def sanitize(text: str) -> str:
        cleaned = TextSanitizer.remove_control_characters(text or "").strip().lower()
        cleaned = re.sub(r"[^\w\s.,!?-]", "", cleaned)
        return re.sub(r"\s+", " ", cleaned).strip()

    def detect_intent(self, text: str, context: ParsingContext) -> UserIntent:
        if self._bare_digit_re.match(text):
            return UserIntent.GO_BACK if text == "0" else UserIntent.ADD_TO_CART

        if self._quantity_item_re.match(text):
            return UserIntent.ADD_TO_CART

        option = _OPTION_RE.search(text)
        if option and 1 <= int(option.group(1)) <= len(self.menu):
            return UserIntent.ADD_TO_CART

        for intent, patterns in self._rules:
            if any(pattern.search(text) for pattern in patterns):
                return intent

        if _ORDER_VERB_RE.match(text) or self._menu_keyword_re.search(text):
            return UserIntent.ADD_TO_CART

        for intent, patterns in self._late_rules:
            if any(pattern.search(text) for pattern in patterns):
                return intent

        if context.current_state == ConversationState.GREETING and text:
            return UserIntent.START_CONVERSATION

        return UserIntent.UNKNOWN

    def extract_entities(self, text: str, intent: UserIntent) -> list[InputEntity]:
        entities: list[InputEntity] = []

        references = [ref.upper() for ref in _PAYMENT_REF_RE.findall(text)]
        for reference in references:
            entities.append(InputEntity(EntityType.PAYMENT_REFERENCE, reference, 0.95))
        # Digits inside references and phone numbers are not quantities or amounts
        remainder = _PAYMENT_REF_RE.sub(" ", text)

        for match in _PHONE_RE.finditer(remainder):
            entities.append(InputEntity(EntityType.PHONE_NUMBER, re.sub(r"\D", "", match.group(0)), 0.95))
        remainder = _PHONE_RE.sub(" ", remainder)

        if intent in (UserIntent.ADD_TO_CART, UserIntent.REMOVE_FROM_CART,
                      UserIntent.SEARCH_PRODUCT, UserIntent.GET_PRODUCT_INFO):
            entities.extend(self._extract_products(remainder))

        if intent in (UserIntent.ADD_TO_CART, UserIntent.REMOVE_FROM_CART) and not self._bare_digit_re.match(text):
            without_selectors = _PRODUCT_ID_RE.sub(" ", _OPTION_RE.sub(" ", remainder))
            for match in _QUANTITY_RE.finditer(without_selectors):
                if int(match.group(1)) > 0:
                    entities.append(InputEntity(EntityType.QUANTITY, match.group(1), 0.9))

        if intent in (UserIntent.CONFIRM_PAYMENT, UserIntent.MAKE_PAYMENT):
            for match in _AMOUNT_RE.finditer(remainder):
                entities.append(InputEntity(EntityType.AMOUNT, match.group(1), 0.8))

        name_match = _CUSTOMER_NAME_RE.search(text)
        if name_match:
            entities.append(InputEntity(EntityType.CUSTOMER_NAME, name_match.group(1).strip().title(), 0.85))

        return entities

    def _extract_products(self, text: str) -> list[InputEntity]:
        entities: list[InputEntity] = []

        product_id = _PRODUCT_ID_RE.search(text)
        if product_id:
            entities.append(InputEntity(EntityType.PRODUCT_ID, product_id.group(1), 0.9))

        if self._bare_digit_re.match(text) and text != "0":
            entities.append(InputEntity(EntityType.PRODUCT_NAME, self.menu[int(text) - 1], 0.95))
            return entities

        option = _OPTION_RE.search(text)
        if option and 1 <= int(option.group(1)) <= len(self.menu):
            entities.append(InputEntity(EntityType.PRODUCT_NAME, self.menu[int(option.group(1)) - 1], 0.9))
            return entities

        keyword = self._menu_keyword_re.search(text)
        if keyword:
            name = next(item for item in self.menu if item.lower() == keyword.group(1))
            entities.append(InputEntity(EntityType.PRODUCT_NAME, name, 0.8))
            return entities

        if product_id:
            return entities

        words = [
            word.strip(".,!?")
            for word in text.split(" ")
        ]
        words = [
            word for word in words
            if len(word) > 2 and word not in _FALLBACK_STOP_WORDS and not word.isdigit()
        ]
        if words:
            entities.append(InputEntity(EntityType.PRODUCT_NAME, " ".join(words), 0.6))
        return entities

    @staticmethod
    def map_intent_to_trigger(intent: UserIntent, state: ConversationState) -> StateTrigger | None:
        resolver = INTENT_TRIGGERS[intent]
        if resolver is None or isinstance(resolver, StateTrigger):
            return resolver
        return resolver(state)

    @staticmethod
    def calculate_confidence(intent: UserIntent, entities: list[InputEntity], text: str) -> float:
        confidence = 0.5
        if intent != UserIntent.UNKNOWN:
            confidence += 0.3
        if entities:
            confidence += 0.2 * (sum(entity.confidence for entity in entities) / len(entities))
        if len(text) > 10:
            confidence += 0.1
        return round(min(confidence, 1.0), 4)
