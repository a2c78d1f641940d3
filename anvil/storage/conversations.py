"""ConversationStore - persistence of Conversation aggregates.

Conversations are created once and removed only through delete(). The
whole Context is stored as one JSON document and rewritten on every save.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from anvil.models import Context, Conversation, ConversationMetrics
from anvil.storage.database import Database
from anvil.storage.models import ConversationRecord

logger = logging.getLogger(__name__)


def _to_domain(row: ConversationRecord) -> Conversation:
    return Conversation(
        id=row.id,
        context=Context.from_dict(row.context) if row.context else None,
        metrics=ConversationMetrics.from_dict(row.metrics or {}),
        title=row.title,
    )


class ConversationStore:
    def __init__(self, database: Database) -> None:
        self.db = database

    async def save(self, conversation: Conversation, session: AsyncSession | None = None) -> None:
        """Insert or update."""

        async def _save(s: AsyncSession) -> None:
            row = await s.get(ConversationRecord, conversation.id)
            if row is None:
                row = ConversationRecord(id=conversation.id)
                s.add(row)
            row.title = conversation.title
            row.context = conversation.context.to_dict() if conversation.context else None
            row.metrics = conversation.metrics.to_dict()
            row.message_count = len(conversation.context.messages) if conversation.context else 0
            await s.flush()

        if session is not None:
            await _save(session)
        else:
            async with self.db.session() as s:
                await _save(s)
                await s.commit()
        logger.debug("Saved conversation %s", conversation.id)

    async def get(self, conversation_id: str, session: AsyncSession | None = None) -> Conversation | None:
        async def _get(s: AsyncSession) -> Conversation | None:
            row = await s.get(ConversationRecord, conversation_id)
            return _to_domain(row) if row is not None else None

        if session is not None:
            return await _get(session)
        async with self.db.session() as s:
            return await _get(s)

    async def list_recent(self, limit: int = 50, session: AsyncSession | None = None) -> list[dict]:
        """Summaries, most recently updated first."""

        async def _list(s: AsyncSession) -> list[dict]:
            result = await s.execute(
                select(ConversationRecord).order_by(ConversationRecord.updated_at.desc()).limit(limit)
            )
            return [
                {
                    "id": row.id,
                    "title": row.title,
                    "message_count": row.message_count,
                    "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                }
                for row in result.scalars().all()
            ]

        if session is not None:
            return await _list(session)
        async with self.db.session() as s:
            return await _list(s)

    async def delete(self, conversation_id: str, session: AsyncSession | None = None) -> bool:
        """Returns False when there was nothing to delete."""

        async def _delete(s: AsyncSession) -> bool:
            result = await s.execute(delete(ConversationRecord).where(ConversationRecord.id == conversation_id))
            return result.rowcount > 0

        if session is not None:
            deleted = await _delete(session)
        else:
            async with self.db.session() as s:
                deleted = await _delete(s)
                await s.commit()
        if deleted:
            logger.info("Deleted conversation %s", conversation_id)
        return deleted
