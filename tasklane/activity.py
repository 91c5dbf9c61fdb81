"""Fire-and-forget audit log of todo and category changes.

Writes happen on their own session in a background task after the primary
operation has committed. A failing write is logged and dropped; it never
reaches the caller.
"""
import asyncio
import logging
from typing import Optional

from sqlmodel import select

from . import config
from .db import async_session
from .models import ActivityLog
from .utils import dumps_state

logger = logging.getLogger(__name__)

ENTITY_TODO = 'TODO'
ENTITY_CATEGORY = 'CATEGORY'

ACTION_CREATE = 'CREATE'
ACTION_UPDATE = 'UPDATE'
ACTION_DELETE = 'DELETE'
ACTION_COMPLETE = 'COMPLETE'
ACTION_UNCOMPLETE = 'UNCOMPLETE'
ACTION_ARCHIVE = 'ARCHIVE'
ACTION_RESTORE = 'RESTORE'

# Strong references so pending writes are not garbage collected mid-flight.
_pending: set[asyncio.Task] = set()


async def _write_entry(entry: ActivityLog) -> None:
    try:
        async with async_session() as sess:
            sess.add(entry)
            await sess.commit()
    except Exception:
        logger.exception('failed to log activity %s %s id=%s', entry.action, entry.entity_type, entry.entity_id)


def log_activity(
    user_id: int,
    entity_type: str,
    entity_title: str,
    action: str,
    entity_id: Optional[int] = None,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
) -> Optional[asyncio.Task]:
    """Schedule an activity row; returns the task (None when disabled)."""
    if not config.ACTIVITY_LOG_ENABLED:
        return None
    try:
        entry = ActivityLog(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_title=entity_title,
            action=action,
            before_state=dumps_state(before),
            after_state=dumps_state(after),
        )
        task = asyncio.get_running_loop().create_task(_write_entry(entry))
    except Exception:
        logger.exception('could not schedule activity log for %s %s', entity_type, entity_id)
        return None
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain() -> None:
    """Wait for scheduled activity writes (used at shutdown and in tests)."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


async def recent_activity(user_id: int, limit: int = 50, entity_type: Optional[str] = None) -> list[ActivityLog]:
    async with async_session() as sess:
        stmt = select(ActivityLog).where(ActivityLog.user_id == user_id)
        if entity_type:
            stmt = stmt.where(ActivityLog.entity_type == entity_type)
        stmt = stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
        q = await sess.exec(stmt)
        return list(q.all())
