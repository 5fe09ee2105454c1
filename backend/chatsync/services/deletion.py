"""Cascading deletion: drain a conversation's turns page by page, then drop the record."""

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Iterable

from chatsync.core.config import settings
from chatsync.core.exceptions import ConfirmationRequired
from chatsync.services.conversation_registry import ConversationRegistry
from chatsync.services.message_log import MessageLog
from chatsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

REQUIRED_CONFIRMATIONS = 2


@dataclass
class DeletionReport:
    conversations_deleted: int = 0
    turns_deleted: int = 0
    page_calls: int = 0

    def as_dict(self) -> dict:
        return {
            "conversations_deleted": self.conversations_deleted,
            "turns_deleted": self.turns_deleted,
        }


class DeletionController:
    def __init__(
        self,
        message_log: MessageLog,
        registry: ConversationRegistry,
        page_size: int = settings.message_page_size,
        max_batch: int = settings.max_write_batch,
        engine: SyncEngine | None = None,
    ):
        self.message_log = message_log
        self.registry = registry
        self.page_size = page_size
        self.max_batch = max_batch
        self.engine = engine

    def _hold(self, conversation_ids: Iterable[str]):
        """No submission may run in a conversation while its turns are being removed."""
        if self.engine is None:
            return nullcontext()
        return self.engine.hold(conversation_ids)

    async def drain_log(self, conversation_id: str, report: DeletionReport) -> None:
        """Delete pages until one comes back short."""
        while True:
            deleted = await self.message_log.delete_page(conversation_id, self.page_size)
            report.page_calls += 1
            report.turns_deleted += deleted
            logger.debug("Deleted %d turns of %s", deleted, conversation_id)
            if deleted < self.page_size:
                return

    async def delete_conversation(self, conversation_id: str) -> DeletionReport:
        report = DeletionReport()
        with self._hold([conversation_id]):
            await self.drain_log(conversation_id, report)
            if await self.registry.delete(conversation_id):
                report.conversations_deleted = 1
        logger.info(
            "Deleted conversation %s (%d turns)", conversation_id, report.turns_deleted
        )
        return report

    async def clear_all(self, owner_id: str, confirmations: int = 0) -> DeletionReport:
        """Delete every conversation of an owner.

        The id list is read once up front. Every log is drained before any
        record is removed, and records go in batches no larger than the
        store's write-batch limit.
        """
        if confirmations < REQUIRED_CONFIRMATIONS:
            raise ConfirmationRequired(
                f"Clearing all chats needs {REQUIRED_CONFIRMATIONS} confirmations"
            )

        conversation_ids = [c.id for c in await self.registry.list_owned(owner_id)]
        logger.info("Clearing %d conversations for %s", len(conversation_ids), owner_id)

        report = DeletionReport()
        with self._hold(conversation_ids):
            for conversation_id in conversation_ids:
                await self.drain_log(conversation_id, report)

            for start in range(0, len(conversation_ids), self.max_batch):
                batch = conversation_ids[start:start + self.max_batch]
                report.conversations_deleted += await self.registry.delete_batch(batch)

        logger.info(
            "Cleared %d conversations and %d turns for %s",
            report.conversations_deleted, report.turns_deleted, owner_id,
        )
        return report
