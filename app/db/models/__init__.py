"""
Database Models
"""
from app.db.models.conversation_session import ConversationSessionRecord, DurableSessionState
from app.db.models.customer import Customer
from app.db.models.product import Product
from app.db.models.order import Order, OrderItem, OrderStatus

__all__ = [
    "ConversationSessionRecord",
    "DurableSessionState",
    "Customer",
    "Product",
    "Order",
    "OrderItem",
    "OrderStatus",
]
