"""
Conversation Session Repository - durable tier of the session store

Rows are keyed by phone number. Writes are conditional on ``last_activity``
so a delayed writer can never move a session backwards.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.conversation_session import ConversationSessionRecord, DurableSessionState

logger = get_logger(__name__)


class ConversationSessionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_phone(self, phone_number: str) -> ConversationSessionRecord | None:
        result = await self.db.execute(
            select(ConversationSessionRecord)
            .where(ConversationSessionRecord.phone_number == phone_number)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        phone_number: str,
        *,
        current_state: DurableSessionState,
        detailed_state: str,
        context: dict[str, Any],
        last_activity: datetime,
        expires_at: datetime,
        customer_id: int | None = None,
    ) -> ConversationSessionRecord:
        """Insert a row, or replace the existing one for this phone (fresh session)"""
        try:
            record = await self.find_by_phone(phone_number)
            if record is None:
                record = ConversationSessionRecord(phone_number=phone_number)
                self.db.add(record)

            record.current_state = current_state
            record.detailed_state = detailed_state
            record.context = context
            record.last_activity = last_activity
            record.expires_at = expires_at
            record.customer_id = customer_id

            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        return record

    async def update(
        self,
        phone_number: str,
        *,
        current_state: DurableSessionState,
        detailed_state: str,
        context: dict[str, Any],
        last_activity: datetime,
        expires_at: datetime,
        customer_id: int | None = None,
        expected_last_activity: datetime | None = None,
    ) -> bool:
        """Upsert by phone, refusing to overwrite a row modified since it was read.

        expected_last_activity is the last_activity the writer loaded. Every
        write advances last_activity, so a row past that value was written by
        someone else and the update is refused. A row behind it (an earlier
        durable write failed) is overwritten. Without it the new last_activity
        is the bound, which lets the sync sweep replay the same snapshot.

        Returns False only for a stale write.
        """
        bound = expected_last_activity or last_activity
        values: dict[str, Any] = {
            "current_state": current_state,
            "detailed_state": detailed_state,
            "context": context,
            "last_activity": last_activity,
            "expires_at": expires_at,
        }
        if customer_id is not None:
            values["customer_id"] = customer_id

        try:
            result = await self.db.execute(
                update(ConversationSessionRecord)
                .where(
                    ConversationSessionRecord.phone_number == phone_number,
                    ConversationSessionRecord.last_activity <= bound,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                await self.db.commit()
                return True

            existing = await self.db.execute(
                select(ConversationSessionRecord.id).where(ConversationSessionRecord.phone_number == phone_number)
            )
            if existing.scalar_one_or_none() is not None:
                await self.db.rollback()
                logger.warning(
                    "Stale session write rejected",
                    extra_data={"phone": PhoneNumberValidator.mask(phone_number)}
                )
                return False

            self.db.add(ConversationSessionRecord(phone_number=phone_number, customer_id=customer_id, **{
                k: v for k, v in values.items() if k != "customer_id"
            }))
            await self.db.commit()
            return True
        except IntegrityError:
            # Concurrent insert for the same phone; the other writer's row stands
            await self.db.rollback()
            logger.warning(
                "Concurrent session insert detected",
                extra_data={"phone": PhoneNumberValidator.mask(phone_number)}
            )
            return False
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def delete(self, phone_number: str) -> bool:
        try:
            result = await self.db.execute(
                delete(ConversationSessionRecord).where(ConversationSessionRecord.phone_number == phone_number)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return bool(result.rowcount)

    async def find_active(self, now: datetime) -> list[ConversationSessionRecord]:
        result = await self.db.execute(
            select(ConversationSessionRecord)
            .where(ConversationSessionRecord.expires_at > now)
            .order_by(ConversationSessionRecord.last_activity.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_active(self, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count(ConversationSessionRecord.id)).where(ConversationSessionRecord.expires_at > now)
        )
        return int(result.scalar_one())

    async def delete_expired(self, now: datetime) -> int:
        try:
            result = await self.db.execute(
                delete(ConversationSessionRecord).where(ConversationSessionRecord.expires_at <= now)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return int(result.rowcount or 0)
