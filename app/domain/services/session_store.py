"""
Hybrid Session Store - Redis cache in front of the durable session table

The database is the source of truth; Redis only removes read latency.
Every storage call is retried with capped exponential backoff and then
degrades to a safe default, so a flaky tier never surfaces to the user.
"""
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import StateMachineConfigurationError
from app.core.logging import get_logger, log_async_operation
from app.core.retry import retry_async
from app.core.validation import PhoneNumberValidator
from app.db.models.conversation_session import ConversationSessionRecord, DurableSessionState
from app.db.repositories import ConversationSessionRepository
from app.state_machine.session import ConversationSession, SessionContext, utcnow
from app.state_machine.states import ConversationState, INITIAL_STATE

logger = get_logger(__name__)

# Enum state -> durable column value. Auxiliary states fold onto their
# nearest equivalent; the exact state travels in ``detailed_state``.
DURABLE_STATE_MAP: dict[ConversationState, DurableSessionState] = {
    ConversationState.GREETING: DurableSessionState.GREETING,
    ConversationState.COLLECTING_NAME: DurableSessionState.GREETING,
    ConversationState.MAIN_MENU: DurableSessionState.GREETING,
    ConversationState.BROWSING_PRODUCTS: DurableSessionState.BROWSING_PRODUCTS,
    ConversationState.ADDING_TO_CART: DurableSessionState.ADDING_TO_CART,
    ConversationState.COLLECTING_QUANTITY: DurableSessionState.ADDING_TO_CART,
    ConversationState.REVIEWING_ORDER: DurableSessionState.REVIEWING_ORDER,
    ConversationState.AWAITING_PAYMENT: DurableSessionState.AWAITING_PAYMENT,
    ConversationState.PAYMENT_CONFIRMATION: DurableSessionState.PAYMENT_CONFIRMATION,
    ConversationState.ORDER_COMPLETE: DurableSessionState.ORDER_COMPLETE,
}

_unmapped = [state.value for state in ConversationState if state not in DURABLE_STATE_MAP]
if _unmapped:
    raise StateMachineConfigurationError([f"State '{s}' has no durable encoding" for s in _unmapped])

# Cache write failed: distinct from a stale write rejected by the repository
_FAILED = None


def to_durable_state(state: ConversationState) -> DurableSessionState:
    return DURABLE_STATE_MAP[state]


def from_durable_state(durable: DurableSessionState | str, detailed: str | None = None) -> ConversationState:
    """Prefer the exact stored state; fall back to the narrow column"""
    if detailed:
        try:
            return ConversationState(detailed)
        except ValueError:
            logger.warning("Unknown detailed session state", extra_data={"detailed_state": detailed})
    value = durable.value if isinstance(durable, DurableSessionState) else durable
    return ConversationState(value)


class HybridSessionStore:
    """Cache-aside session store keyed by phone number.

    ``redis`` may be None, in which case the store runs durable-only.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis: aioredis.Redis | None = None,
        ttl_seconds: int | None = None,
        key_prefix: str | None = None,
    ):
        self.repository = ConversationSessionRepository(db)
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.SESSION_TTL_SECONDS
        self.key_prefix = key_prefix or settings.SESSION_KEY_PREFIX

    # ==================== Public API ====================

    async def get_session(self, phone_number: str) -> ConversationSession | None:
        """Live session for the phone, creating a fresh GREETING session when none exists.

        Returns None only when every tier is failing.
        """
        session = await self.find_session(phone_number)
        if session is not None:
            return session
        return await self.create_session(phone_number, INITIAL_STATE)

    async def find_session(self, phone_number: str) -> ConversationSession | None:
        """Live session for the phone, or None. Never creates."""
        now = utcnow()

        cached = await self._cache_get(phone_number)
        if cached is not None:
            if not cached.is_expired(self.ttl_seconds, now):
                return cached
            logger.info(
                "Cached session expired",
                extra_data={"phone": PhoneNumberValidator.mask(phone_number)}
            )
            await self._purge(phone_number)
            return None

        record = await retry_async(
            lambda: self.repository.find_by_phone(phone_number),
            operation_name="session_db_get",
            default=None,
        )
        if record is None:
            return None

        session = self._record_to_session(record)
        if session.is_expired(self.ttl_seconds, now):
            await self._purge(phone_number)
            return None

        await self._cache_set(session)
        return session

    async def create_session(
        self,
        phone_number: str,
        initial_state: ConversationState = INITIAL_STATE,
        customer_id: int | None = None,
        context: SessionContext | None = None,
    ) -> ConversationSession | None:
        session = ConversationSession(
            phone_number=phone_number,
            current_state=initial_state,
            context=context or SessionContext(),
            customer_id=customer_id,
        )

        record = await retry_async(
            lambda: self.repository.create(phone_number, customer_id=customer_id, **self._durable_fields(session)),
            operation_name="session_db_create",
            default=None,
        )
        cached = await self._cache_set(session)

        if record is None and not cached:
            logger.error(
                "Session creation failed on every tier",
                extra_data={"phone": PhoneNumberValidator.mask(phone_number)}
            )
            return None

        logger.info(
            "Session created",
            extra_data={
                "phone": PhoneNumberValidator.mask(phone_number),
                "state": initial_state.value,
                "durable": record is not None,
                "cached": cached,
            }
        )
        return session

    async def update_session(self, session: ConversationSession, customer_id: int | None = None) -> bool:
        """Persist the session: durable first, then cache.

        Succeeds if either tier accepted the write. A stale write (another
        writer saved this phone after the session was loaded) is rejected and
        the cache is left untouched.
        """
        if customer_id is not None:
            session.customer_id = customer_id
        loaded_at = session.last_activity
        session.touch()

        durable = await retry_async(
            lambda: self.repository.update(
                session.phone_number,
                customer_id=session.customer_id,
                expected_last_activity=loaded_at,
                **self._durable_fields(session),
            ),
            operation_name="session_db_update",
            default=_FAILED,
        )
        if durable is False:
            return False

        cached = await self._cache_set(session)

        if durable is _FAILED and cached:
            logger.warning(
                "Session saved to cache only, durable write failed",
                extra_data={
                    "phone": PhoneNumberValidator.mask(session.phone_number),
                    "state": session.current_state.value,
                }
            )

        return bool(durable) or cached

    async def delete_session(self, phone_number: str) -> bool:
        durable = await retry_async(
            lambda: self._delete_durable(phone_number),
            operation_name="session_db_delete",
            default=False,
        )
        cached = await self._cache_delete(phone_number)
        return durable or cached

    async def update_session_customer_id(self, phone_number: str, customer_id: int) -> bool:
        session = await self.find_session(phone_number)
        if session is None:
            return False
        return await self.update_session(session, customer_id=customer_id)

    async def restore_session_from_database(self, phone_number: str) -> ConversationSession | None:
        """Reload a session from the durable tier and re-warm the cache"""
        record = await retry_async(
            lambda: self.repository.find_by_phone(phone_number),
            operation_name="session_db_get",
            default=None,
        )
        if record is None:
            return None

        session = self._record_to_session(record)
        if session.is_expired(self.ttl_seconds):
            return None

        await self._cache_set(session)
        logger.info(
            "Session restored from database",
            extra_data={"phone": PhoneNumberValidator.mask(phone_number), "state": session.current_state.value}
        )
        return session

    async def get_active_sessions_count(self) -> int:
        """Durable count of live sessions; the cache key count is the fallback"""
        count = await retry_async(
            lambda: self.repository.count_active(utcnow()),
            operation_name="session_db_count",
            default=None,
        )
        if count is not None:
            return count

        keys = await self._cache_keys()
        return len(keys)

    async def get_active_phone_numbers(self) -> list[str]:
        records = await retry_async(
            lambda: self.repository.find_active(utcnow()),
            operation_name="session_db_find_active",
            default=None,
        )
        if records is not None:
            return [record.phone_number for record in records]

        return [key[len(self.key_prefix):] for key in await self._cache_keys()]

    async def get_session_stats(self) -> dict:
        sessions_by_state = {state.value: 0 for state in ConversationState}

        records = await retry_async(
            lambda: self.repository.find_active(utcnow()),
            operation_name="session_db_find_active",
            default=[],
        )
        for record in records:
            state = from_durable_state(record.current_state, record.detailed_state)
            sessions_by_state[state.value] += 1

        return {"total_sessions": len(records), "sessions_by_state": sessions_by_state}

    @log_async_operation("sync_active_sessions_to_database")
    async def sync_active_sessions_to_database(self) -> int:
        """Upsert every live cached session into the durable tier. Idempotent."""
        if self.redis is None:
            return 0

        synced = 0
        now = utcnow()
        for key in await self._cache_keys():
            session = await self._cache_get(key[len(self.key_prefix):])
            if session is None or session.is_expired(self.ttl_seconds, now):
                continue

            written = await retry_async(
                lambda: self.repository.update(
                    session.phone_number,
                    customer_id=session.customer_id,
                    **self._durable_fields(session),
                ),
                operation_name="session_db_sync",
                default=_FAILED,
            )
            if written:
                synced += 1

        logger.info("Session sync sweep finished", extra_data={"synced": synced})
        return synced

    @log_async_operation("cleanup_expired_sessions")
    async def cleanup_expired_sessions(self) -> int:
        """Delete expired durable rows. Cache entries expire through their Redis TTL."""
        removed = await retry_async(
            lambda: self.repository.delete_expired(utcnow()),
            operation_name="session_db_cleanup",
            default=0,
        )
        logger.info("Expired sessions removed", extra_data={"removed": removed})
        return removed

    # ==================== Helpers ====================

    def _key(self, phone_number: str) -> str:
        return f"{self.key_prefix}{phone_number}"

    def _expires_at(self, session: ConversationSession) -> datetime:
        return session.expires_at(self.ttl_seconds)

    def _durable_fields(self, session: ConversationSession) -> dict:
        return {
            "current_state": to_durable_state(session.current_state),
            "detailed_state": session.current_state.value,
            "context": session.context.model_dump(mode="json"),
            "last_activity": session.last_activity,
            "expires_at": self._expires_at(session),
        }

    @staticmethod
    def _record_to_session(record: ConversationSessionRecord) -> ConversationSession:
        return ConversationSession(
            phone_number=record.phone_number,
            current_state=from_durable_state(record.current_state, record.detailed_state),
            last_activity=record.last_activity,
            context=SessionContext.model_validate(record.context or {}),
            customer_id=record.customer_id,
        )

    async def _delete_durable(self, phone_number: str) -> bool:
        await self.repository.delete(phone_number)
        return True

    async def _purge(self, phone_number: str) -> None:
        await self.delete_session(phone_number)

    # ==================== Cache tier ====================

    async def _cache_get(self, phone_number: str) -> ConversationSession | None:
        if self.redis is None:
            return None

        raw = await retry_async(
            lambda: self.redis.get(self._key(phone_number)),
            operation_name="session_cache_get",
            default=None,
        )
        if raw is None:
            return None

        try:
            return ConversationSession.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Discarding unreadable cached session",
                extra_data={"phone": PhoneNumberValidator.mask(phone_number), "error": str(e)}
            )
            await self._cache_delete(phone_number)
            return None

    async def _cache_set(self, session: ConversationSession) -> bool:
        if self.redis is None:
            return False

        remaining = self._expires_at(session) - utcnow()
        ttl = max(1, int(remaining / timedelta(seconds=1)))

        async def _write() -> bool:
            await self.redis.set(self._key(session.phone_number), session.model_dump_json(), ex=ttl)
            return True

        return await retry_async(_write, operation_name="session_cache_set", default=False)

    async def _cache_delete(self, phone_number: str) -> bool:
        if self.redis is None:
            return False

        async def _delete() -> bool:
            await self.redis.delete(self._key(phone_number))
            return True

        return await retry_async(_delete, operation_name="session_cache_delete", default=False)

    async def _cache_keys(self) -> list[str]:
        if self.redis is None:
            return []

        async def _scan() -> list[str]:
            return [key async for key in self.redis.scan_iter(match=f"{self.key_prefix}*")]

        return await retry_async(_scan, operation_name="session_cache_scan", default=[])
