"""
Cart Service - aggregates the current order held in the session context

Every operation takes a context and returns a new one; nothing is written
to storage here. Totals are always recomputed from the line items.
"""
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import get_logger
from app.domain.services.catalog import OrderGateway, ProductCatalog
from app.state_machine.session import (
    CartLine,
    CurrentOrder,
    SessionContext,
    quantize_money,
)

logger = get_logger(__name__)


@dataclass
class CartSummary:
    items: list[CartLine]
    item_count: int
    subtotal: Decimal
    tax: Decimal
    total: Decimal


@dataclass
class CartResult:
    success: bool
    context: SessionContext
    message: str | None = None
    error: str | None = None


@dataclass
class CartValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class OrderCreationResult:
    success: bool
    context: SessionContext
    order_id: int | None = None
    errors: list[str] = field(default_factory=list)


def _with_items(context: SessionContext, items: list[CartLine]) -> SessionContext:
    order = CurrentOrder(items=tuple(items)) if items else None
    return context.model_copy(update={"current_order": order})


class CartService:
    """Cart operations over ``SessionContext.current_order``"""

    def __init__(
        self,
        catalog: ProductCatalog,
        orders: OrderGateway | None = None,
        tax_rate: Decimal | None = None,
        low_stock_multiplier: int | None = None,
        currency_symbol: str | None = None,
    ):
        self.catalog = catalog
        self.orders = orders
        self.tax_rate = tax_rate if tax_rate is not None else settings.TAX_RATE
        self.low_stock_multiplier = low_stock_multiplier or settings.LOW_STOCK_MULTIPLIER
        self.currency_symbol = currency_symbol if currency_symbol is not None else settings.CURRENCY_SYMBOL

    # ==================== Mutations ====================

    async def add_item(self, context: SessionContext, product_id: int, quantity: int = 1) -> CartResult:
        if quantity < 1:
            return CartResult(success=False, context=context, error="Quantity must be at least 1")

        product = await self.catalog.get_product(product_id)
        if product is None:
            return CartResult(success=False, context=context, error="Product not found")
        if not product.available:
            return CartResult(success=False, context=context, error=f"{product.name} is currently unavailable")

        items = list(context.cart_items)
        existing = next((i for i, line in enumerate(items) if line.product_id == product_id), None)
        new_quantity = quantity + (items[existing].quantity if existing is not None else 0)

        if not await self.catalog.is_available(product_id, new_quantity):
            return CartResult(
                success=False,
                context=context,
                error=f"Insufficient stock for {product.name}. Requested: {new_quantity}",
            )

        line = CartLine(
            product_id=product.id,
            name=product.name,
            unit_price=product.price,
            quantity=new_quantity,
        )
        if existing is not None:
            items[existing] = line
        else:
            items.append(line)

        return CartResult(
            success=True,
            context=_with_items(context, items),
            message=f"Added {quantity} x {product.name} to your cart",
        )

    def remove_item(self, context: SessionContext, product_id: int, quantity: int | None = None) -> CartResult:
        """Drop the line, or decrement it when ``quantity`` is less than what is held"""
        items = list(context.cart_items)
        if not items:
            return CartResult(success=False, context=context, error="Your cart is empty")

        index = next((i for i, line in enumerate(items) if line.product_id == product_id), None)
        if index is None:
            return CartResult(success=False, context=context, error="Item not found in cart")

        line = items[index]
        if quantity is not None and 0 < quantity < line.quantity:
            items[index] = line.model_copy(update={"quantity": line.quantity - quantity})
            message = f"Removed {quantity} x {line.name} from your cart"
        else:
            del items[index]
            message = f"Removed {line.name} from your cart"

        return CartResult(success=True, context=_with_items(context, items), message=message)

    def clear(self, context: SessionContext) -> SessionContext:
        return context.model_copy(update={"current_order": None, "selected_products": ()})

    async def add_selected_products(self, context: SessionContext) -> tuple[SessionContext, list[str]]:
        """Apply every pending selection to the cart. Returns the new context and per-item notices."""
        notices: list[str] = []
        for selection in context.selected_products:
            result = await self.add_item(context, selection.product_id, selection.quantity)
            if result.success:
                context = result.context
                notices.append(result.message)
            else:
                notices.append(result.error)
        return context.model_copy(update={"selected_products": ()}), notices

    # ==================== Read side ====================

    def get_summary(self, context: SessionContext) -> CartSummary:
        items = list(context.cart_items)
        subtotal = quantize_money(sum((line.line_total for line in items), Decimal("0")))
        tax = quantize_money(subtotal * self.tax_rate)
        return CartSummary(
            items=items,
            item_count=sum(line.quantity for line in items),
            subtotal=subtotal,
            tax=tax,
            total=quantize_money(subtotal + tax),
        )

    async def validate(self, context: SessionContext) -> CartValidationResult:
        """Re-check every line against the catalog.

        Errors (missing, discontinued, short stock) block the order;
        warnings (price change, low stock) are informational.
        """
        items = context.cart_items
        if not items:
            return CartValidationResult(is_valid=False, errors=["Cart is empty"])

        errors: list[str] = []
        warnings: list[str] = []

        for line in items:
            product = await self.catalog.get_product(line.product_id)
            if product is None or not product.available:
                errors.append(f"{line.name} is no longer available")
                continue

            if not await self.catalog.is_available(line.product_id, line.quantity):
                errors.append(f"Insufficient stock for {line.name}. Requested: {line.quantity}")
                continue

            if abs(product.price - line.unit_price) > Decimal("0.01"):
                warnings.append(
                    f"Price of {line.name} changed from {self.format_money(line.unit_price)} "
                    f"to {self.format_money(product.price)}"
                )
            if product.stock_quantity is not None and product.stock_quantity <= line.quantity * self.low_stock_multiplier:
                warnings.append(f"Only {product.stock_quantity} {line.name} left in stock")

        return CartValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    # ==================== Order creation ====================

    async def create_order_from_cart(
        self,
        context: SessionContext,
        customer_id: int,
        phone_number: str,
    ) -> OrderCreationResult:
        if self.orders is None:
            raise AppException("CartService was built without an order gateway")

        validation = await self.validate(context)
        if not validation.is_valid:
            return OrderCreationResult(success=False, context=context, errors=validation.errors)

        try:
            order_id = await self.orders.create_order(
                customer_id,
                list(context.cart_items),
                notes=f"Order placed via chat from {phone_number}",
                payment_reference=context.payment_reference,
            )
        except (SQLAlchemyError, AppException) as e:
            logger.error(
                "Order creation failed",
                extra_data={"customer_id": customer_id, "error": str(e)},
                exc_info=True
            )
            return OrderCreationResult(
                success=False,
                context=context,
                errors=["We couldn't create your order right now. Please try again."],
            )

        return OrderCreationResult(
            success=True,
            context=context.model_copy(update={"order_id": order_id, "order_validation_errors": ()}),
            order_id=order_id,
        )

    # ==================== Formatting ====================

    def format_money(self, amount: Decimal) -> str:
        return f"{self.currency_symbol}{quantize_money(amount):,.2f}"

    def format_cart_summary(self, summary: CartSummary) -> str:
        if not summary.items:
            return "Your cart is empty."
        lines = ["Your cart:"]
        for line in summary.items:
            lines.append(f"- {line.name} x{line.quantity}: {self.format_money(line.line_total)}")
        lines.append(f"Subtotal: {self.format_money(summary.subtotal)}")
        lines.append(f"Tax: {self.format_money(summary.tax)}")
        lines.append(f"Total: {self.format_money(summary.total)}")
        return "\n".join(lines)

    def format_order_confirmation(self, order_id: int, summary: CartSummary) -> str:
        return (
            f"Order #{order_id} confirmed: {summary.item_count} item(s), "
            f"total {self.format_money(summary.total)}"
        )
