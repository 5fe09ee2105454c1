"""Conversation registry: owned conversation records, metadata edits and live lists."""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatsync.core.database import async_session, verify_indexes
from chatsync.core.exceptions import ConversationNotFound, InvalidMetadata, ReadError, WriteError
from chatsync.core.feed import LiveQuery, OnError, OnNext
from chatsync.models.conversation import Category, Conversation, Sender, as_utc, utcnow

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 40
IMAGE_CHAT_TITLE = "Image chat"
ALL_CATEGORIES = "all"

EDITABLE_FIELDS = {"title", "last_message", "last_sender", "pinned", "category"}


def derive_title(text: str) -> str:
    """Title for a conversation taken from its first user turn."""
    text = text.strip()
    if not text:
        return IMAGE_CHAT_TITLE
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


def derive_view(
    conversations: Iterable[Conversation],
    search: str = "",
    category: str = ALL_CATEGORIES,
) -> list[Conversation]:
    """Filter by title substring and category, then float pinned conversations to the top.

    The sort is stable, so the incoming (most recently updated first) order is
    kept within the pinned and unpinned groups.
    """
    needle = search.lower()
    matches = [
        c for c in conversations
        if needle in (c.title or "").lower()
        and (category == ALL_CATEGORIES or c.category == category)
    ]
    return sorted(matches, key=lambda c: not c.pinned)


def _validate_patch(patch: dict[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - EDITABLE_FIELDS
    if unknown:
        raise InvalidMetadata(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    clean = dict(patch)
    if "category" in clean:
        try:
            clean["category"] = Category(clean["category"]).value
        except ValueError:
            raise InvalidMetadata(f"Unknown category: {clean['category']}")
    if "last_sender" in clean:
        try:
            clean["last_sender"] = Sender(clean["last_sender"]).value
        except ValueError:
            raise InvalidMetadata(f"Unknown sender: {clean['last_sender']}")
    if "pinned" in clean and not isinstance(clean["pinned"], bool):
        raise InvalidMetadata("pinned must be a boolean")
    if "title" in clean and not isinstance(clean["title"], str):
        raise InvalidMetadata("title must be a string")
    return clean


class ConversationRegistry:
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
        self._feed = LiveQuery(self._load_snapshot, name="conversations")

    # --- Records ---

    async def create(self, owner_id: str) -> Conversation:
        now = self._clock()
        conv = Conversation(
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
            last_message="",
            last_sender=None,
            pinned=False,
            category=Category.PERSONAL.value,
        )
        try:
            async with self._session_factory() as db:
                db.add(conv)
                await db.commit()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to create conversation: {e}") from e

        logger.info("Created conversation %s for %s", conv.id, owner_id)
        await self._feed.publish(owner_id)
        return conv

    async def get(self, conversation_id: str, owner_id: str | None = None) -> Conversation:
        """Fetch a conversation, optionally checking ownership."""
        try:
            async with self._session_factory() as db:
                conv = await db.get(Conversation, conversation_id)
        except SQLAlchemyError as e:
            raise ReadError(f"Failed to load conversation {conversation_id}: {e}") from e
        if conv is None or (owner_id is not None and conv.owner_id != owner_id):
            raise ConversationNotFound("Conversation not found")
        return conv

    async def list_owned(self, owner_id: str) -> list[Conversation]:
        """Conversations of an owner, most recently updated first."""
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Conversation)
                    .where(Conversation.owner_id == owner_id)
                    .order_by(Conversation.updated_at.desc())
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise ReadError(f"Failed to list conversations of {owner_id}: {e}") from e

    def subscribe(self, owner_id: str, on_next: OnNext, on_error: OnError | None = None) -> Callable[[], None]:
        return self._feed.subscribe(owner_id, on_next, on_error)

    @property
    def feed(self) -> LiveQuery:
        return self._feed

    # --- Metadata ---

    async def update_metadata(self, conversation_id: str, **patch: Any) -> Conversation:
        """Apply a partial update and stamp updated_at in the same write."""
        clean = _validate_patch(patch)
        try:
            async with self._session_factory() as db:
                conv = await db.get(Conversation, conversation_id)
                if conv is None:
                    raise ConversationNotFound("Conversation not found")
                for field, value in clean.items():
                    setattr(conv, field, value)
                conv.updated_at = self._stamp(conv)
                await db.commit()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to update conversation {conversation_id}: {e}") from e

        await self._feed.publish(conv.owner_id)
        return conv

    async def set_title(self, conversation_id: str, title: str) -> Conversation:
        return await self.update_metadata(conversation_id, title=title)

    async def set_pinned(self, conversation_id: str, pinned: bool) -> Conversation:
        return await self.update_metadata(conversation_id, pinned=pinned)

    async def toggle_pinned(self, conversation_id: str) -> Conversation:
        conv = await self.get(conversation_id)
        return await self.set_pinned(conversation_id, not conv.pinned)

    async def set_category(self, conversation_id: str, category: str) -> Conversation:
        return await self.update_metadata(conversation_id, category=category)

    # --- Deletion (records only; the turn log must already be drained) ---

    async def delete(self, conversation_id: str) -> bool:
        return await self.delete_batch([conversation_id]) == 1

    async def delete_batch(self, conversation_ids: list[str]) -> int:
        """Delete a set of records in one transaction and return how many existed."""
        if not conversation_ids:
            return 0
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Conversation.owner_id)
                    .where(Conversation.id.in_(conversation_ids))
                )
                owners = list(result.scalars().all())
                await db.execute(
                    delete(Conversation).where(Conversation.id.in_(conversation_ids))
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to delete conversations: {e}") from e

        for owner_id in set(owners):
            await self._feed.publish(owner_id)
        return len(owners)

    # --- Helpers ---

    def _stamp(self, conv: Conversation) -> datetime:
        """Current time, never earlier than the record's existing timestamps."""
        now = self._clock()
        floor = max(as_utc(conv.updated_at), as_utc(conv.created_at))
        return max(now, floor)

    async def _load_snapshot(self, owner_id: str) -> list[Conversation]:
        if self._index_check is not None and not self._indexes_verified:
            await self._index_check()
            self._indexes_verified = True
        return await self.list_owned(owner_id)
