"""Synchronization engine: drives one user turn through the log, the registry and the model.

Per conversation the engine moves through
``IDLE -> SUBMITTING -> AWAITING_COMPLETION -> FINALIZING -> IDLE``, with an
``ERROR_FINALIZING`` branch when the completion step fails. Only one
submission per conversation may be outstanding; a second one is refused, not
queued. Different conversations run independently.
"""

import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

from chatsync.core.exceptions import (
    ChatSyncError,
    ConfigurationError,
    InvalidImage,
    SubmissionRejected,
)
from chatsync.integrations.completion_client import (
    CompletionClient,
    build_text_payload,
    build_vision_payload,
    extract_reply_text,
)
from chatsync.integrations.image_directives import DirectiveResult, extract_directive
from chatsync.models.conversation import Sender
from chatsync.services.conversation_registry import ConversationRegistry, derive_title
from chatsync.services.message_log import MessageLog, TurnDraft

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[Image]"
ERROR_PREVIEW = "Error occurred"


class SubmissionState(str, enum.Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_COMPLETION = "awaiting_completion"
    FINALIZING = "finalizing"
    ERROR_FINALIZING = "error_finalizing"


@dataclass
class SubmissionResult:
    user_turn_id: str
    assistant_turn_id: str | None
    text: str
    image_url: str | None = None
    is_error: bool = False


def error_text(error: Exception) -> str:
    return f"I encountered an error: {error}. Please try again or check your connection."


def validate_image(data_url: str) -> None:
    if not data_url.startswith("data:image/") or "," not in data_url:
        raise InvalidImage("Please select an image file")


class SyncEngine:
    def __init__(
        self,
        message_log: MessageLog,
        registry: ConversationRegistry,
        completion_client: CompletionClient,
        parse_directive: Callable[[str], DirectiveResult] = extract_directive,
    ):
        self.message_log = message_log
        self.registry = registry
        self.completion_client = completion_client
        self._parse_directive = parse_directive
        self._states: dict[str, SubmissionState] = {}
        self._pending_images: dict[str, str] = {}
        self._held: set[str] = set()

    def state(self, conversation_id: str) -> SubmissionState:
        return self._states.get(conversation_id, SubmissionState.IDLE)

    def is_busy(self, conversation_id: str) -> bool:
        return self.state(conversation_id) != SubmissionState.IDLE

    def _set_state(self, conversation_id: str, state: SubmissionState) -> None:
        logger.debug("Conversation %s: %s", conversation_id, state.value)
        self._states[conversation_id] = state

    def _ensure_can_start(self, conversation_id: str) -> None:
        if conversation_id in self._held:
            raise SubmissionRejected("This conversation is being deleted")
        if self.is_busy(conversation_id):
            raise SubmissionRejected("A reply is already being generated for this conversation")

    @contextmanager
    def hold(self, conversation_ids: Iterable[str]) -> Iterator[None]:
        """Keep submissions out of these conversations while the block runs.

        Refused with SubmissionRejected if any of them has a submission in
        flight. Pending images are dropped when the hold ends.
        """
        ids = set(conversation_ids)
        busy = sorted(cid for cid in ids if self.is_busy(cid) or cid in self._held)
        if busy:
            raise SubmissionRejected(
                f"Conversation busy: {', '.join(busy)}"
            )
        self._held |= ids
        try:
            yield
        finally:
            self._held -= ids
            for cid in ids:
                self.clear_image(cid)

    # --- Pending image ---

    def attach_image(self, conversation_id: str, data_url: str) -> None:
        validate_image(data_url)
        self._pending_images[conversation_id] = data_url

    def clear_image(self, conversation_id: str) -> None:
        self._pending_images.pop(conversation_id, None)

    def pending_image(self, conversation_id: str) -> str | None:
        return self._pending_images.get(conversation_id)

    # --- Submission ---

    async def submit(self, conversation_id: str, text: str = "", image: str | None = None) -> SubmissionResult:
        text = (text or "").strip()
        image = image or self._pending_images.get(conversation_id)
        if image:
            validate_image(image)

        if not text and not image:
            raise SubmissionRejected("Message cannot be empty")
        self._ensure_can_start(conversation_id)

        self._set_state(conversation_id, SubmissionState.SUBMITTING)
        try:
            return await self._run(conversation_id, text, image)
        finally:
            self._states.pop(conversation_id, None)

    async def regenerate(self, conversation_id: str) -> SubmissionResult:
        """Send the latest user turn's text again; the new answer is appended after the old one."""
        self._ensure_can_start(conversation_id)

        turns = await self.message_log.list_turns(conversation_id)
        user_turns = [t for t in turns if t.sender == Sender.USER.value]
        if not user_turns:
            raise SubmissionRejected("Nothing to regenerate")
        return await self.submit(conversation_id, user_turns[-1].text)

    async def _run(self, conversation_id: str, text: str, image: str | None) -> SubmissionResult:
        # A failure here propagates: no assistant step has started, so no error turn.
        history = await self.message_log.list_turns(conversation_id)
        shown_text = text or IMAGE_PLACEHOLDER
        user_turn_id = await self.message_log.append(
            conversation_id,
            TurnDraft(sender=Sender.USER, text=shown_text, image_data=image),
        )
        patch = {"last_message": shown_text, "last_sender": Sender.USER.value}
        if not any(t.sender == Sender.USER.value for t in history):
            patch["title"] = derive_title(text)
        await self.registry.update_metadata(conversation_id, **patch)

        self._set_state(conversation_id, SubmissionState.AWAITING_COMPLETION)
        if image:
            endpoint = self.completion_client.vision_endpoint
            payload = build_vision_payload(text, image)
            self.clear_image(conversation_id)
        else:
            endpoint = self.completion_client.text_endpoint
            payload = build_text_payload([t for t in history if not t.has_image], text)

        try:
            result = await self.completion_client.send(endpoint, payload)
            reply = self._parse_directive(extract_reply_text(result))

            self._set_state(conversation_id, SubmissionState.FINALIZING)
            assistant_turn_id = await self.message_log.append(
                conversation_id,
                TurnDraft(sender=Sender.ASSISTANT, text=reply.text, image_url=reply.image_url),
            )
            preview = f"{reply.text} [Image]" if reply.image_url else reply.text
            await self.registry.update_metadata(
                conversation_id, last_message=preview, last_sender=Sender.ASSISTANT.value
            )
        except ConfigurationError:
            raise
        except ChatSyncError as e:
            logger.warning("Completion failed for %s: %s", conversation_id, e)
            return await self._finalize_error(conversation_id, user_turn_id, e)
        except Exception as e:
            logger.exception("Unexpected failure answering %s", conversation_id)
            return await self._finalize_error(conversation_id, user_turn_id, e)

        logger.info("Conversation %s answered (image=%s)", conversation_id, bool(reply.image_url))
        return SubmissionResult(
            user_turn_id=user_turn_id,
            assistant_turn_id=assistant_turn_id,
            text=reply.text,
            image_url=reply.image_url,
        )

    async def _finalize_error(self, conversation_id: str, user_turn_id: str, error: Exception) -> SubmissionResult:
        self._set_state(conversation_id, SubmissionState.ERROR_FINALIZING)
        message = error_text(error)
        assistant_turn_id = None
        try:
            assistant_turn_id = await self.message_log.append(
                conversation_id,
                TurnDraft(sender=Sender.ASSISTANT, text=message, is_error=True),
            )
            await self.registry.update_metadata(
                conversation_id, last_message=ERROR_PREVIEW, last_sender=Sender.ASSISTANT.value
            )
        except Exception:
            logger.exception("Failed to save error turn for %s", conversation_id)

        return SubmissionResult(
            user_turn_id=user_turn_id,
            assistant_turn_id=assistant_turn_id,
            text=message,
            is_error=True,
        )
