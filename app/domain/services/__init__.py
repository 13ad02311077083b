"""
Domain Services
"""
from app.domain.services.cart_service import CartService
from app.domain.services.catalog import (
    DatabaseCustomerDirectory,
    DatabaseOrderGateway,
    DatabaseProductCatalog,
)
from app.domain.services.conversation_service import ConversationService
from app.domain.services.input_parser import InputParser
from app.domain.services.session_store import HybridSessionStore

__all__ = [
    "CartService",
    "ConversationService",
    "DatabaseCustomerDirectory",
    "DatabaseOrderGateway",
    "DatabaseProductCatalog",
    "HybridSessionStore",
    "InputParser",
]
