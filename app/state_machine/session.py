"""
Conversation Session and Context Models

The context is a typed, immutable value: transition actions and cart
operations return a new instance via ``model_copy(update=...)``.
"""
from datetime import datetime, timezone, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from app.state_machine.states import ConversationState, INITIAL_STATE

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary amount half-up to two decimal places"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CartLine(BaseModel):
    """One product line in the current order"""
    model_config = ConfigDict(frozen=True)

    product_id: int
    name: str
    unit_price: Decimal
    quantity: int = Field(ge=1)

    @property
    def line_total(self) -> Decimal:
        return quantize_money(self.unit_price * self.quantity)


class CurrentOrder(BaseModel):
    """Cart under construction. The total is derived, never stored independently."""
    model_config = ConfigDict(frozen=True)

    items: tuple[CartLine, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_amount(self) -> Decimal:
        return quantize_money(sum((line.line_total for line in self.items), Decimal("0")))

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.items)

    def find_line(self, product_id: int) -> CartLine | None:
        for line in self.items:
            if line.product_id == product_id:
                return line
        return None


class SelectedProduct(BaseModel):
    """Product resolved from user input, waiting to be applied to the cart"""
    model_config = ConfigDict(frozen=True)

    product_id: int
    name: str
    unit_price: Decimal
    quantity: int = Field(default=1, ge=1)


class SessionContext(BaseModel):
    """Per-conversation working memory"""
    model_config = ConfigDict(frozen=True)

    current_order: CurrentOrder | None = None
    selected_products: tuple[SelectedProduct, ...] = ()
    payment_reference: str | None = None
    order_id: int | None = None
    customer_name: str | None = None
    is_new_customer: bool = False
    error_count: int = 0
    retry_count: int = 0
    last_message: str | None = None
    order_validation_errors: tuple[str, ...] = ()
    # Free-form fields for flows without a typed slot
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def cart_items(self) -> tuple[CartLine, ...]:
        return self.current_order.items if self.current_order else ()

    @property
    def cart_total(self) -> Decimal:
        return self.current_order.total_amount if self.current_order else Decimal("0.00")

    def changed_fields(self, other: "SessionContext") -> dict[str, Any]:
        """Top-level fields whose value differs in ``other``, mapped to other's JSON values"""
        mine = self.model_dump(mode="json")
        theirs = other.model_dump(mode="json")
        return {key: value for key, value in theirs.items() if mine.get(key) != value}


class ConversationSession(BaseModel):
    """Conversation progress for one phone number"""

    phone_number: str
    current_state: ConversationState = INITIAL_STATE
    last_activity: datetime = Field(default_factory=utcnow)
    context: SessionContext = Field(default_factory=SessionContext)
    customer_id: int | None = None

    @field_validator("last_activity", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """SQLite and some drivers return naive datetimes; they are UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def expires_at(self, ttl_seconds: int) -> datetime:
        return self.last_activity + timedelta(seconds=ttl_seconds)

    def is_expired(self, ttl_seconds: int, now: datetime | None = None) -> bool:
        return self.expires_at(ttl_seconds) < (now or utcnow())

    def touch(self, now: datetime | None = None) -> None:
        """Advance last_activity, strictly increasing even within one clock tick."""
        candidate = now or utcnow()
        floor = self.last_activity + timedelta(microseconds=1)
        self.last_activity = candidate if candidate > floor else floor
