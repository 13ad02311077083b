"""
Catalog, Order and Customer collaborators

The conversation engine reaches products, orders and customers only through
the abstract interfaces below. The SQLAlchemy implementations back them with
the ``products``, ``orders``/``order_items`` and ``customers`` tables.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import OrderNotFoundError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.customer import Customer
from app.db.models.order import Order, OrderItem, OrderStatus
from app.db.models.product import Product
from app.state_machine.session import CartLine, quantize_money

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProductInfo:
    id: int
    name: str
    price: Decimal
    available: bool = True
    stock_quantity: int | None = None
    description: str | None = None
    category: str | None = None


@dataclass(frozen=True)
class CustomerInfo:
    id: int
    phone_number: str
    name: str | None = None


class ProductCatalog(ABC):
    @abstractmethod
    async def get_product(self, product_id: int) -> ProductInfo | None: ...

    @abstractmethod
    async def is_available(self, product_id: int, quantity: int) -> bool:
        """True if the product exists, is on sale and has ``quantity`` in stock"""

    @abstractmethod
    async def find_by_name(self, name: str) -> ProductInfo | None: ...


class OrderGateway(ABC):
    @abstractmethod
    async def create_order(
        self,
        customer_id: int,
        items: Sequence[CartLine],
        notes: str | None = None,
        payment_reference: str | None = None,
    ) -> int:
        """Persist an order and return its id"""

    @abstractmethod
    async def update_order_status(self, order_id: int, status: OrderStatus, notes: str | None = None) -> None: ...


class CustomerDirectory(ABC):
    @abstractmethod
    async def find_by_phone(self, phone_number: str) -> CustomerInfo | None: ...

    @abstractmethod
    async def create(self, phone_number: str, name: str | None = None) -> CustomerInfo: ...


def _to_product_info(product: Product) -> ProductInfo:
    return ProductInfo(
        id=product.id,
        name=product.name,
        price=quantize_money(Decimal(product.price)),
        available=bool(product.available),
        stock_quantity=product.stock_quantity,
        description=product.description,
        category=product.category,
    )


class DatabaseProductCatalog(ProductCatalog):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_product(self, product_id: int) -> ProductInfo | None:
        product = await self.db.get(Product, product_id)
        return _to_product_info(product) if product else None

    async def is_available(self, product_id: int, quantity: int) -> bool:
        product = await self.get_product(product_id)
        if product is None or not product.available:
            return False
        return product.stock_quantity is None or product.stock_quantity >= quantity

    async def find_by_name(self, name: str) -> ProductInfo | None:
        """Exact (case-insensitive) name first, then a substring match; available products win."""
        needle = name.strip().lower()
        if not needle:
            return None

        result = await self.db.execute(
            select(Product)
            .where(func.lower(Product.name) == needle)
            .order_by(Product.available.desc(), Product.id)
        )
        product = result.scalars().first()
        if product is None:
            result = await self.db.execute(
                select(Product)
                .where(Product.name.ilike(f"%{needle}%"))
                .order_by(Product.available.desc(), Product.id)
            )
            product = result.scalars().first()

        return _to_product_info(product) if product else None


class DatabaseOrderGateway(OrderGateway):
    def __init__(self, db: AsyncSession, tax_rate: Decimal | None = None):
        self.db = db
        self.tax_rate = tax_rate if tax_rate is not None else settings.TAX_RATE

    async def create_order(
        self,
        customer_id: int,
        items: Sequence[CartLine],
        notes: str | None = None,
        payment_reference: str | None = None,
    ) -> int:
        subtotal = quantize_money(sum((line.line_total for line in items), Decimal("0")))
        tax = quantize_money(subtotal * self.tax_rate)

        order = Order(
            customer_id=customer_id,
            status=OrderStatus.PENDING,
            subtotal_amount=subtotal,
            tax_amount=tax,
            total_amount=subtotal + tax,
            payment_reference=payment_reference,
            notes=notes,
        )
        order.items = [
            OrderItem(
                product_id=line.product_id,
                product_name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.line_total,
            )
            for line in items
        ]

        try:
            self.db.add(order)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "customer_id": customer_id,
                "items": len(items),
                "total": str(order.total_amount),
            }
        )
        return order.id

    async def update_order_status(self, order_id: int, status: OrderStatus, notes: str | None = None) -> None:
        order = await self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        order.status = status
        if notes:
            order.notes = f"{order.notes}\n{notes}" if order.notes else notes

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            "Order status updated",
            extra_data={"order_id": order_id, "status": status.value}
        )


class DatabaseCustomerDirectory(CustomerDirectory):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_phone(self, phone_number: str) -> CustomerInfo | None:
        result = await self.db.execute(
            select(Customer).where(Customer.phone_number == phone_number)
        )
        customer = result.scalar_one_or_none()
        if customer is None:
            return None
        return CustomerInfo(id=customer.id, phone_number=customer.phone_number, name=customer.name)

    async def create(self, phone_number: str, name: str | None = None) -> CustomerInfo:
        customer = Customer(phone_number=phone_number, name=name)
        try:
            self.db.add(customer)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            "Customer created",
            extra_data={"customer_id": customer.id, "phone": PhoneNumberValidator.mask(phone_number)}
        )
        return CustomerInfo(id=customer.id, phone_number=customer.phone_number, name=customer.name)
