"""
Conversation Service - single entry point from chat transports into the engine

process_message() is transport agnostic: it takes a phone number and raw
text and returns the reply text plus the resulting state. Only this layer
turns failures into user-facing text.
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException
from app.core.logging import bind_conversation, get_logger, get_correlation_id
from app.core.redis_client import get_redis_or_none
from app.core.validation import PhoneNumberValidator
from app.db.models.order import OrderStatus
from app.domain.services.cart_service import CartService
from app.domain.services.catalog import (
    CustomerDirectory,
    DatabaseCustomerDirectory,
    DatabaseOrderGateway,
    DatabaseProductCatalog,
    ProductCatalog,
)
from app.domain.services.input_parser import (
    EntityType,
    InputParser,
    ParsedInput,
    ParsingContext,
)
from app.domain.services.session_store import HybridSessionStore
from app.state_machine.handlers import (
    GENERIC_APOLOGY,
    INVALID_INPUT_REPLY,
    ReplyInput,
    StateReplyBuilder,
)
from app.state_machine.machine import StateMachine, get_state_machine
from app.state_machine.session import ConversationSession, SelectedProduct, SessionContext
from app.state_machine.states import ConversationState, StateTrigger, SYSTEM_TRIGGERS

logger = get_logger(__name__)


@dataclass
class ConversationReply:
    response_text: str
    next_state: ConversationState | None = None
    context_delta: dict[str, Any] | None = None


@dataclass
class _Effects:
    """Side effects gathered while handling one message"""
    notices: list[str] = field(default_factory=list)


class PhoneLockRegistry:
    """One asyncio.Lock per phone number, so messages from one user are handled in order.

    Scope is the process. Across workers, HybridSessionStore.update_session
    refuses a write when the durable row changed after the session was loaded.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: dict[str, int] = defaultdict(int)

    def lock_for(self, phone_number: str) -> "_PhoneLock":
        return _PhoneLock(self, phone_number)

    def __len__(self) -> int:
        return len(self._locks)


class _PhoneLock:
    def __init__(self, registry: PhoneLockRegistry, phone_number: str):
        self.registry = registry
        self.phone_number = phone_number

    async def __aenter__(self) -> None:
        self.registry._waiters[self.phone_number] += 1
        try:
            await self.registry._locks[self.phone_number].acquire()
        except BaseException:
            # Cancelled while waiting; __aexit__ will not run
            self._leave()
            raise

    async def __aexit__(self, *exc_info) -> None:
        self.registry._locks[self.phone_number].release()
        self._leave()

    def _leave(self) -> None:
        self.registry._waiters[self.phone_number] -= 1
        # Drop idle locks so the registry does not grow with every phone ever seen
        if self.registry._waiters[self.phone_number] == 0:
            del self.registry._waiters[self.phone_number]
            del self.registry._locks[self.phone_number]


_default_locks = PhoneLockRegistry()


class ConversationService:
    """Composes parser, state machine, cart and session store"""

    def __init__(
        self,
        store: HybridSessionStore,
        catalog: ProductCatalog,
        cart: CartService,
        customers: CustomerDirectory,
        parser: InputParser | None = None,
        state_machine: StateMachine | None = None,
        locks: PhoneLockRegistry | None = None,
    ):
        self.store = store
        self.catalog = catalog
        self.cart = cart
        self.customers = customers
        self.parser = parser or InputParser()
        self.state_machine = state_machine or get_state_machine()
        self.replies = StateReplyBuilder(list(self.parser.menu))
        self.locks = locks or _default_locks

    # ==================== Inbound messages ====================

    async def process_message(self, phone_number: str, text: str) -> ConversationReply:
        phone_number = PhoneNumberValidator.normalize(phone_number)
        # Keep the caller's correlation id; mint one for transports that have none
        get_correlation_id()

        with bind_conversation(PhoneNumberValidator.mask(phone_number)):
            validation = self.parser.validate_input(text)
            if not validation.is_valid:
                logger.info("Rejected inbound message", extra_data={"errors": validation.errors})
                return ConversationReply(response_text=INVALID_INPUT_REPLY)

            async with self.locks.lock_for(phone_number):
                try:
                    return await self._process_locked(phone_number, text)
                except (SQLAlchemyError, AppException) as e:
                    logger.error(
                        "Message processing failed",
                        extra_data={"error": str(e)},
                        exc_info=True
                    )
                    return ConversationReply(response_text=GENERIC_APOLOGY)

    async def _process_locked(self, phone_number: str, text: str) -> ConversationReply:
        session = await self.store.find_session(phone_number)
        if session is None:
            session = await self._start_session(phone_number)
            if session is None:
                return ConversationReply(response_text=GENERIC_APOLOGY)

        from_state = session.current_state
        parsed = self.parser.parse_input(text, ParsingContext(current_state=from_state))

        logger.info(
            "Message parsed",
            extra_data={
                "state": from_state.value,
                "intent": parsed.intent.value,
                "trigger": parsed.trigger.value if parsed.trigger else None,
                "confidence": parsed.confidence,
            }
        )

        if parsed.trigger is None:
            return ConversationReply(
                response_text=self.replies.not_understood(from_state).text,
                next_state=from_state,
            )

        context = session.context.model_copy(update={"last_message": parsed.sanitized_text})
        context = await self._prepare_context(context, parsed)

        result = self.state_machine.execute_transition(from_state, parsed.trigger, context)
        if not result.success:
            logger.info("No transition for message", extra_data={"error": result.error})
            return ConversationReply(
                response_text=self.replies.not_understood(from_state).text,
                next_state=from_state,
            )

        effects = _Effects()
        new_state, new_context = await self._apply_effects(
            session, from_state, result.new_state, result.context, parsed, effects
        )
        return await self._commit(session, new_state, new_context, effects)

    # ==================== System triggers ====================

    async def apply_system_trigger(self, phone_number: str, trigger: StateTrigger) -> ConversationReply | None:
        """Apply a collaborator-driven event (payment verified/failed/timeout).

        Returns None when there is no live session for the phone.
        """
        if trigger not in SYSTEM_TRIGGERS:
            raise ValueError(f"'{trigger.value}' is not a system trigger")

        phone_number = PhoneNumberValidator.normalize(phone_number)
        with bind_conversation(PhoneNumberValidator.mask(phone_number)):
            async with self.locks.lock_for(phone_number):
                session = await self.store.find_session(phone_number)
                if session is None:
                    logger.warning("System trigger for unknown session", extra_data={"trigger": trigger.value})
                    return None

                from_state = session.current_state
                order_id = session.context.order_id
                result = self.state_machine.execute_transition(from_state, trigger, session.context)
                if not result.success:
                    logger.warning(
                        "System trigger rejected",
                        extra_data={"trigger": trigger.value, "error": result.error}
                    )
                    return ConversationReply(
                        response_text=self.replies.not_understood(from_state).text,
                        next_state=from_state,
                    )

                if result.new_state == ConversationState.ORDER_COMPLETE:
                    await self._update_order_status(
                        order_id, OrderStatus.COMPLETED, f"Payment {session.context.payment_reference} verified"
                    )
                elif trigger == StateTrigger.PAYMENT_TIMEOUT:
                    await self._update_order_status(order_id, OrderStatus.CANCELLED, "Payment window expired")

                return await self._commit(session, result.new_state, result.context, _Effects())

    async def _update_order_status(self, order_id: int | None, status: OrderStatus, notes: str) -> None:
        """Best effort: the conversation moves on even if the order row cannot be updated"""
        if order_id is None or self.cart.orders is None:
            return
        try:
            await self.cart.orders.update_order_status(order_id, status, notes=notes)
        except (SQLAlchemyError, AppException) as e:
            logger.error(
                "Order status update failed",
                extra_data={"order_id": order_id, "status": status.value, "error": str(e)},
                exc_info=True
            )

    async def handle_payment_verification(self, phone_number: str, verified: bool) -> ConversationReply | None:
        trigger = StateTrigger.PAYMENT_VERIFIED if verified else StateTrigger.PAYMENT_FAILED
        return await self.apply_system_trigger(phone_number, trigger)

    # ==================== Introspection ====================

    async def get_session(self, phone_number: str) -> ConversationSession | None:
        return await self.store.find_session(PhoneNumberValidator.normalize(phone_number))

    async def get_active_sessions_count(self) -> int:
        return await self.store.get_active_sessions_count()

    async def get_session_stats(self) -> dict:
        return await self.store.get_session_stats()

    async def reset_conversation(self, phone_number: str) -> ConversationSession | None:
        """Throw away progress and start over from GREETING"""
        phone_number = PhoneNumberValidator.normalize(phone_number)
        with bind_conversation(PhoneNumberValidator.mask(phone_number)):
            async with self.locks.lock_for(phone_number):
                await self.store.delete_session(phone_number)
                return await self.store.create_session(phone_number, ConversationState.GREETING)

    # ==================== Steps ====================

    async def _start_session(self, phone_number: str) -> ConversationSession | None:
        customer = await self.customers.find_by_phone(phone_number)
        if customer is not None:
            return await self.store.create_session(
                phone_number,
                ConversationState.MAIN_MENU,
                customer_id=customer.id,
                context=SessionContext(customer_name=customer.name, is_new_customer=False),
            )
        return await self.store.create_session(
            phone_number,
            ConversationState.GREETING,
            context=SessionContext(is_new_customer=True),
        )

    async def _prepare_context(self, context: SessionContext, parsed: ParsedInput) -> SessionContext:
        """Resolve product entities into ``selected_products`` before the guard runs"""
        name = self.parser.get_entity_by_type(parsed.entities, EntityType.CUSTOMER_NAME)
        if name is not None:
            context = context.model_copy(update={"customer_name": name.value})

        if parsed.trigger not in (StateTrigger.ADD_TO_CART, StateTrigger.REMOVE_FROM_CART):
            return context

        product = await self._resolve_product(parsed)
        if product is None:
            return context.model_copy(update={"selected_products": ()})

        quantity_entity = self.parser.get_entity_by_type(parsed.entities, EntityType.QUANTITY)
        quantity = int(quantity_entity.value) if quantity_entity else 1
        return context.model_copy(update={
            "selected_products": (
                SelectedProduct(
                    product_id=product.id,
                    name=product.name,
                    unit_price=product.price,
                    quantity=quantity,
                ),
            ),
        })

    async def _resolve_product(self, parsed: ParsedInput):
        product_id = self.parser.get_entity_by_type(parsed.entities, EntityType.PRODUCT_ID)
        if product_id is not None:
            product = await self.catalog.get_product(int(product_id.value))
            if product is not None:
                return product

        for entity in self.parser.get_entities_by_type(parsed.entities, EntityType.PRODUCT_NAME):
            product = await self.catalog.find_by_name(entity.value)
            if product is not None:
                return product
        return None

    async def _apply_effects(
        self,
        session: ConversationSession,
        from_state: ConversationState,
        new_state: ConversationState,
        context: SessionContext,
        parsed: ParsedInput,
        effects: _Effects,
    ) -> tuple[ConversationState, SessionContext]:
        if parsed.trigger == StateTrigger.ADD_TO_CART and context.selected_products:
            context, notices = await self.cart.add_selected_products(context)
            effects.notices.extend(notices)

        elif parsed.trigger == StateTrigger.REMOVE_FROM_CART:
            for selection in context.selected_products:
                removal = self.cart.remove_item(
                    context,
                    selection.product_id,
                    selection.quantity if self._has_quantity(parsed) else None,
                )
                context = removal.context
                effects.notices.append(removal.message or removal.error)
            if not context.selected_products:
                effects.notices.append("Tell me which item to remove, e.g. \"remove pizza\".")
            context = context.model_copy(update={"selected_products": ()})

        if from_state == ConversationState.REVIEWING_ORDER and new_state == ConversationState.AWAITING_PAYMENT:
            return await self._place_order(session, context)

        return new_state, context

    @staticmethod
    def _has_quantity(parsed: ParsedInput) -> bool:
        return any(entity.type == EntityType.QUANTITY for entity in parsed.entities)

    async def _place_order(
        self, session: ConversationSession, context: SessionContext
    ) -> tuple[ConversationState, SessionContext]:
        customer_id = session.customer_id
        if customer_id is None:
            customer = await self.customers.find_by_phone(session.phone_number)
            if customer is None:
                customer = await self.customers.create(session.phone_number, context.customer_name)
            customer_id = customer.id
            session.customer_id = customer_id

        outcome = await self.cart.create_order_from_cart(context, customer_id, session.phone_number)
        if not outcome.success:
            logger.info(
                "Order validation failed at confirmation",
                extra_data={"errors": outcome.errors}
            )
            # Stay in review; the reference minted by the transition is discarded
            return ConversationState.REVIEWING_ORDER, context.model_copy(update={
                "payment_reference": None,
                "order_validation_errors": tuple(outcome.errors),
            })

        return ConversationState.AWAITING_PAYMENT, outcome.context

    async def _commit(
        self,
        session: ConversationSession,
        new_state: ConversationState,
        new_context: SessionContext,
        effects: _Effects,
    ) -> ConversationReply:
        previous_context = session.context
        session.current_state = new_state
        session.context = new_context

        saved = await self.store.update_session(session)
        if not saved:
            logger.error(
                "Session could not be persisted",
                extra_data={"state": new_state.value}
            )
            return ConversationReply(response_text=GENERIC_APOLOGY)

        cart_text = None
        if new_context.cart_items:
            cart_text = self.cart.format_cart_summary(self.cart.get_summary(new_context))

        reply = self.replies.build(
            new_state,
            ReplyInput(context=new_context, cart_text=cart_text, notices=effects.notices),
        )
        return ConversationReply(
            response_text=reply.text,
            next_state=new_state,
            context_delta=previous_context.changed_fields(new_context),
        )


async def build_conversation_service(db: AsyncSession) -> ConversationService:
    """Wire the default collaborators around one database session"""
    redis = await get_redis_or_none()
    catalog = DatabaseProductCatalog(db)
    return ConversationService(
        store=HybridSessionStore(db, redis),
        catalog=catalog,
        cart=CartService(catalog, DatabaseOrderGateway(db)),
        customers=DatabaseCustomerDirectory(db),
    )
