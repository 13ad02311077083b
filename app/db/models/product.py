"""
Product Model - catalog entries offered in the chat menu
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Numeric, Text

from app.db.database import Base


class Product(Base):
    """Catalog product. ``price`` is in major currency units."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    available = Column(Boolean, default=True, nullable=False)
    category = Column(String(50), nullable=True)
    # None means stock is not tracked for this product
    stock_quantity = Column(Integer, nullable=True)
    sku = Column(String(50), unique=True, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )
