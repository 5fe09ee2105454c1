"""Message log: append-only, ordered turns for one conversation, with live views."""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatsync.core.database import async_session, verify_indexes
from chatsync.core.exceptions import ConversationNotFound, InvalidImage, ReadError, WriteError
from chatsync.core.feed import LiveQuery, OnError, OnNext
from chatsync.models.conversation import Conversation, Sender, Turn, as_utc, utcnow

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class TurnDraft:
    """A turn waiting to be written. Timestamps and ids are assigned by the log."""

    sender: Sender
    text: str
    image_data: str | None = None
    image_url: str | None = None
    is_error: bool = False

    def __post_init__(self):
        if self.image_data and self.image_url:
            raise InvalidImage("A turn carries an inline image or a generated image, not both")
        if self.is_error and self.sender != Sender.ASSISTANT:
            raise ValueError("Only assistant turns can be flagged as errors")


class MessageLog:
    def __init__(
        self,
        session_factory: async_sessionmaker = async_session,
        clock: Callable[[], datetime] = utcnow,
        index_check: Callable[[], Awaitable[None]] | None = verify_indexes,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._index_check = index_check
        self._indexes_verified = False
        # Entries vanish once no append for the conversation holds the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._feed = LiveQuery(self._load_snapshot, name="turns")

    # --- Writes ---

    async def append(self, conversation_id: str, draft: TurnDraft) -> str:
        """Store a turn and return its id.

        The creation time is assigned here, under a per-conversation lock, so
        concurrent appends never share or reorder timestamps. Appending to a
        conversation whose record is gone raises ConversationNotFound.
        """
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        turn_id = str(uuid.uuid4())
        async with lock:
            try:
                async with self._session_factory() as db:
                    if await db.get(Conversation, conversation_id) is None:
                        raise ConversationNotFound(f"Conversation {conversation_id} no longer exists")
                    last = await db.scalar(
                        select(func.max(Turn.created_at)).where(
                            Turn.conversation_id == conversation_id
                        )
                    )
                    db.add(Turn(
                        id=turn_id,
                        conversation_id=conversation_id,
                        sender=draft.sender.value,
                        text=draft.text,
                        created_at=self._next_timestamp(as_utc(last)),
                        image_data=draft.image_data,
                        image_url=draft.image_url,
                        is_error=draft.is_error,
                    ))
                    await db.commit()
            except SQLAlchemyError as e:
                raise WriteError(f"Failed to append turn to {conversation_id}: {e}") from e

        await self._feed.publish(conversation_id)
        return turn_id

    async def delete_page(self, conversation_id: str, page_size: int) -> int:
        """Delete up to ``page_size`` turns of a conversation in one transaction."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Turn.id)
                    .where(Turn.conversation_id == conversation_id)
                    .limit(page_size)
                )
                ids = list(result.scalars().all())
                if ids:
                    await db.execute(delete(Turn).where(Turn.id.in_(ids)))
                    await db.commit()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to delete turns of {conversation_id}: {e}") from e

        if ids:
            await self._feed.publish(conversation_id)
        return len(ids)

    # --- Reads ---

    async def list_turns(self, conversation_id: str) -> list[Turn]:
        """All turns of a conversation, oldest first."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Turn)
                    .where(Turn.conversation_id == conversation_id)
                    .order_by(Turn.created_at.asc())
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise ReadError(f"Failed to load turns of {conversation_id}: {e}") from e

    async def count(self, conversation_id: str) -> int:
        try:
            async with self._session_factory() as db:
                return await db.scalar(
                    select(func.count()).select_from(Turn).where(
                        Turn.conversation_id == conversation_id
                    )
                )
        except SQLAlchemyError as e:
            raise ReadError(f"Failed to count turns of {conversation_id}: {e}") from e

    def subscribe(self, conversation_id: str, on_next: OnNext, on_error: OnError | None = None) -> Callable[[], None]:
        """Push the ordered turn list now and after every change. Returns the teardown."""
        return self._feed.subscribe(conversation_id, on_next, on_error)

    @property
    def feed(self) -> LiveQuery:
        return self._feed

    # --- Helpers ---

    def _next_timestamp(self, last: datetime | None) -> datetime:
        now = self._clock()
        if last is not None and now <= last:
            return last + _TICK
        return now

    async def _load_snapshot(self, conversation_id: str) -> list[Turn]:
        if self._index_check is not None and not self._indexes_verified:
            await self._index_check()
            self._indexes_verified = True
        return await self.list_turns(conversation_id)
