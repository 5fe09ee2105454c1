"""Completion backend integration using httpx, with bounded retry and exponential backoff."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

import httpx

from chatsync.core.config import Settings, settings as default_settings
from chatsync.core.exceptions import ClientError, ConfigurationError, TransientError

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are a helpful and friendly AI chat assistant. Keep your responses concise and "
    "engaging, and always answer truthfully and ethically. Respond using markdown. If the "
    "user asks you to generate, create, or draw an image, respond with "
    "'[IMAGE_REQUEST: description]' where description is a detailed prompt for the image "
    "they want."
)

DEFAULT_VISION_PROMPT = "What's in this image?"
FALLBACK_REPLY = "I'm sorry, I couldn't generate a response."
DEFAULT_IMAGE_MIME = "image/jpeg"

ROLE_BY_SENDER = {"user": "user", "assistant": "model"}


class CompletionClient:
    """Posts completion/vision payloads and retries transient failures.

    Up to ``max_attempts`` calls are made. 5xx responses and network errors are
    retried after 1s, 2s, 4s, ...; any other non-2xx status is terminal.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        max_attempts: int = 3,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._http_client = http_client
        self._sleep = sleep

    @property
    def text_endpoint(self) -> str:
        return f"{self.base_url}/chat"

    @property
    def vision_endpoint(self) -> str:
        return f"{self.base_url}/vision"

    async def send(self, endpoint: str, payload: dict) -> dict:
        last_error: TransientError | None = None

        for attempt in range(self.max_attempts):
            if attempt > 0:
                delay = 2 ** (attempt - 1)
                logger.info("Attempt %d failed (%s). Retrying in %ds...", attempt, last_error, delay)
                await self._sleep(delay)

            try:
                response = await self._post(endpoint, payload)
            except httpx.TransportError as e:
                last_error = TransientError(cause=e)
                continue

            if response.status_code >= 500:
                last_error = TransientError(status=response.status_code)
                continue
            if not response.is_success:
                logger.error("Client Error: %s %s", response.status_code, response.text)
                raise ClientError(response.status_code, response.text)

            try:
                return response.json()
            except ValueError as e:
                last_error = TransientError(cause=e)

        raise last_error

    async def _post(self, endpoint: str, payload: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(endpoint, json=payload, headers=self.headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(endpoint, json=payload, headers=self.headers)


def build_completion_client(config: Settings | None = None, **kwargs) -> CompletionClient:
    config = config or default_settings
    if not config.completion_base_url:
        raise ConfigurationError("COMPLETION_BASE_URL is not configured")
    return CompletionClient(
        config.completion_base_url,
        api_key=config.completion_api_key,
        max_attempts=config.completion_max_attempts,
        timeout=config.completion_timeout_seconds,
        **kwargs,
    )


# --- Payloads ---

def _system_instruction() -> dict:
    return {"parts": [{"text": SYSTEM_INSTRUCTION}]}


def build_text_payload(history: Iterable[Any], user_text: str) -> dict:
    """Prior turns (anything with ``sender`` and ``text``) plus the new user text."""
    contents = [
        {"role": ROLE_BY_SENDER.get(turn.sender, "model"), "parts": [{"text": turn.text}]}
        for turn in history
    ]
    contents.append({"role": "user", "parts": [{"text": user_text}]})
    return {"contents": contents, "systemInstruction": _system_instruction()}


def split_data_url(data_url: str) -> tuple[str, str]:
    """Return (mime_type, base64_data) for a ``data:<mime>;base64,<data>`` URL."""
    header, _, data = data_url.partition(",")
    mime_type = DEFAULT_IMAGE_MIME
    if header.startswith("data:"):
        mime_type = header[len("data:"):].split(";")[0] or DEFAULT_IMAGE_MIME
    return mime_type, data


def build_vision_payload(user_text: str, image_data_url: str) -> dict:
    mime_type, data = split_data_url(image_data_url)
    return {
        "contents": [{
            "role": "user",
            "parts": [
                {"text": user_text or DEFAULT_VISION_PROMPT},
                {"inline_data": {"mime_type": mime_type, "data": data}},
            ],
        }],
        "systemInstruction": _system_instruction(),
    }


def extract_reply_text(result: dict) -> str:
    """Text of the first candidate, or a fixed apology when there is none."""
    try:
        text = result["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return FALLBACK_REPLY
    return text or FALLBACK_REPLY
