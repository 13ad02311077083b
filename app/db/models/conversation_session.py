"""
Conversation Session Model - durable tier of the hybrid session store
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Enum as SQLEnum

from app.db.database import Base


class DurableSessionState(str, enum.Enum):
    """State vocabulary of the durable table.

    Narrower than the conversation state enum: auxiliary states fold onto
    their nearest equivalent. The exact state is kept in ``detailed_state``.
    """
    GREETING = "greeting"
    BROWSING_PRODUCTS = "browsing_products"
    ADDING_TO_CART = "adding_to_cart"
    REVIEWING_ORDER = "reviewing_order"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    ORDER_COMPLETE = "order_complete"


class ConversationSessionRecord(Base):
    """One row per phone number; source of truth for conversation progress"""

    __tablename__ = "conversation_sessions"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(20), unique=True, index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)

    current_state = Column(
        SQLEnum(
            DurableSessionState,
            name="conversation_state",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
        default=DurableSessionState.GREETING
    )
    detailed_state = Column(String(50), nullable=True)

    context = Column(JSON, default=dict, nullable=False)

    last_activity = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )
