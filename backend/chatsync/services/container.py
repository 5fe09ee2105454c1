"""Wires the log, the registry, the engine and the deletion controller together."""

from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from chatsync.core.config import settings
from chatsync.core.database import async_session, verify_indexes
from chatsync.integrations.completion_client import CompletionClient, build_completion_client
from chatsync.integrations.image_directives import extract_directive
from chatsync.services.conversation_registry import ConversationRegistry
from chatsync.services.deletion import DeletionController
from chatsync.services.message_log import MessageLog
from chatsync.services.sync_engine import SyncEngine


@dataclass
class Services:
    message_log: MessageLog
    registry: ConversationRegistry
    engine: SyncEngine
    deletion: DeletionController


def build_services(
    session_factory: async_sessionmaker = async_session,
    completion_client: CompletionClient | None = None,
    index_check: Callable[[], Awaitable[None]] | None = verify_indexes,
) -> Services:
    message_log = MessageLog(session_factory, index_check=index_check)
    registry = ConversationRegistry(session_factory, index_check=index_check)
    engine = SyncEngine(
        message_log,
        registry,
        completion_client or build_completion_client(),
        parse_directive=partial(extract_directive, template=settings.image_service_url),
    )
    deletion = DeletionController(
        message_log,
        registry,
        page_size=settings.message_page_size,
        max_batch=settings.max_write_batch,
        engine=engine,
    )
    return Services(message_log=message_log, registry=registry, engine=engine, deletion=deletion)
