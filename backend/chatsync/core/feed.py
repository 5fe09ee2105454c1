"""Push-based live queries.

A ``LiveQuery`` wraps a loader coroutine (``key -> snapshot``). Subscribers
register ``on_next``/``on_error`` callbacks for a key and get back a teardown
function. Writers call ``publish(key)`` after committing; the loader is re-run
and the fresh snapshot is pushed to every subscriber of that key. Each load is
numbered when it starts, and a subscriber only ever moves forward to a newer
snapshot, whatever order the loads finish in.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chatsync.core.exceptions import ConfigurationError, StreamError

logger = logging.getLogger(__name__)

Loader = Callable[[str], Awaitable[Any]]
OnNext = Callable[[Any], None]
OnError = Callable[[Exception], None]


@dataclass(eq=False)
class _Subscriber:
    on_next: OnNext
    on_error: OnError | None
    active: bool = True
    # Sequence number of the newest snapshot handed to this subscriber
    seen: int = 0


class LiveQuery:
    def __init__(self, loader: Loader, name: str = "query"):
        self._loader = loader
        self._name = name
        self._subscribers: dict[str, list[_Subscriber]] = {}
        self._sequence: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, key: str, on_next: OnNext, on_error: OnError | None = None) -> Callable[[], None]:
        """Register callbacks for ``key``. Must be called from a running event loop.

        The current snapshot is delivered asynchronously, never inline.
        """
        sub = _Subscriber(on_next=on_next, on_error=on_error)
        self._subscribers.setdefault(key, []).append(sub)

        sequence = self._next_sequence(key)
        task = asyncio.get_running_loop().create_task(self._deliver(key, [sub], sequence))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        def unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            subs = self._subscribers.get(key, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(key, None)
                self._sequence.pop(key, None)

        return unsubscribe

    def subscriber_count(self, key: str) -> int:
        return len(self._subscribers.get(key, []))

    async def publish(self, key: str) -> None:
        subs = list(self._subscribers.get(key, []))
        if subs:
            await self._deliver(key, subs, self._next_sequence(key))

    async def drain(self) -> None:
        """Wait for pending initial deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _next_sequence(self, key: str) -> int:
        """Number a load before it starts; later numbers observe later commits."""
        sequence = self._sequence.get(key, 0) + 1
        self._sequence[key] = sequence
        return sequence

    async def _deliver(self, key: str, subs: list[_Subscriber], sequence: int) -> None:
        try:
            snapshot = await self._loader(key)
        except ConfigurationError as e:
            logger.error("%s subscription for %s misconfigured: %s", self._name, key, e)
            self._terminate(key, e)
            return
        except Exception as e:
            logger.warning("%s subscription for %s failed: %s", self._name, key, e)
            self._terminate(key, StreamError(e))
            return

        for sub in subs:
            # Loads can finish out of order; never replace a newer snapshot with an older one
            if not sub.active or sequence <= sub.seen:
                continue
            sub.seen = sequence
            try:
                sub.on_next(snapshot)
            except Exception:
                logger.exception("%s subscriber for %s raised", self._name, key)

    def _terminate(self, key: str, error: Exception) -> None:
        """A failed query ends every subscription on the key; nobody is resubscribed."""
        self._sequence.pop(key, None)
        for sub in self._subscribers.pop(key, []):
            sub.active = False
            if sub.on_error is None:
                continue
            try:
                sub.on_error(error)
            except Exception:
                logger.exception("%s error callback for %s raised", self._name, key)
