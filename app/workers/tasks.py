"""
Celery Tasks for Session Maintenance

- sync_active_sessions: upsert live cached sessions into the durable table
- cleanup_expired_sessions: delete durable rows past their expiry
"""
import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.session_store import HybridSessionStore
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import get_redis_or_none

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before the loop closes
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _sync_sessions() -> dict:
    async with get_task_session() as db:
        redis = await get_redis_or_none()
        if redis is None:
            logger.warning("Session sync skipped, cache unavailable")
            return {"synced": 0, "skipped": True}

        store = HybridSessionStore(db, redis)
        synced = await store.sync_active_sessions_to_database()
        return {"synced": synced, "skipped": False}


async def _cleanup_sessions() -> dict:
    async with get_task_session() as db:
        store = HybridSessionStore(db, await get_redis_or_none())
        removed = await store.cleanup_expired_sessions()
        return {"removed": removed}


@celery_app.task(name="app.workers.tasks.sync_active_sessions")
def sync_active_sessions():
    """Periodic durable sync sweep for sessions that only reached the cache"""
    return run_async(_sync_sessions())


@celery_app.task(name="app.workers.tasks.cleanup_expired_sessions")
def cleanup_expired_sessions():
    """Remove expired durable session rows"""
    return run_async(_cleanup_sessions())
