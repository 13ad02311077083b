"""
Service dependencies for API routes
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.services.conversation_service import ConversationService, build_conversation_service


async def get_conversation_service(db: AsyncSession = Depends(get_db)) -> ConversationService:
    return await build_conversation_service(db)
