"""
Channel: many-to-one FIFO event delivery.

Senders emit fire-and-forget: :meth:`Sender.send` never raises and returns
``False`` when the receiver is gone.  The receiver's ``async for`` ends once
every sender has been closed and the buffered items are drained, so a
forwarding task can be shut down deterministically by closing its senders
and then awaiting it.
"""

import asyncio
import logging
import threading
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class _State:
    def __init__(self, name: str) -> None:
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()
        self.senders = 0
        self.receiver_closed = False
        self.dropped = 0
        # Guards the sender count; clones may be closed from worker threads.
        self.lock = threading.Lock()


class Sender(Generic[T]):
    def __init__(self, state: _State) -> None:
        self._state = state
        self._closed = False
        with state.lock:
            state.senders += 1

    @property
    def closed(self) -> bool:
        return self._closed or self._state.receiver_closed

    def send(self, item: T) -> bool:
        """Best-effort send.  Never raises."""
        if self.closed:
            self._state.dropped += 1
            return False
        self._state.queue.put_nowait(item)
        return True

    def clone(self) -> "Sender[T]":
        if self._closed:
            raise RuntimeError(f"cannot clone a closed sender on channel {self._state.name!r}")
        return Sender(self._state)

    def close(self) -> None:
        """Release this sender.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        with self._state.lock:
            self._state.senders -= 1
            last = self._state.senders == 0
        if last:
            self._state.queue.put_nowait(_CLOSED)

    def __enter__(self) -> "Sender[T]":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Receiver(Generic[T]):
    def __init__(self, state: _State) -> None:
        self._state = state
        self._done = False

    async def recv(self) -> Optional[T]:
        """Next item, or ``None`` once every sender is closed."""
        if self._done:
            return None
        item = await self._state.queue.get()
        if item is _CLOSED:
            self._done = True
            return None
        return item

    def try_recv(self) -> Optional[T]:
        if self._done:
            return None
        try:
            item = self._state.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._done = True
            return None
        return item

    def drain(self) -> list[T]:
        """Everything currently buffered, without waiting."""
        items = []
        while (item := self.try_recv()) is not None:
            items.append(item)
        return items

    def close(self) -> None:
        """Stop accepting items; later sends are dropped."""
        self._state.receiver_closed = True
        if self._state.dropped:
            logger.debug("Channel %r: %d item(s) dropped after close",
                         self._state.name, self._state.dropped)

    def __aiter__(self) -> "Receiver[T]":
        return self

    async def __anext__(self) -> T:
        item = await self.recv()
        if item is None:
            raise StopAsyncIteration
        return item


def channel(name: str = "") -> "tuple[Sender, Receiver]":
    """Create a connected ``(sender, receiver)`` pair."""
    state = _State(name)
    return Sender(state), Receiver(state)
