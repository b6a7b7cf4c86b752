"""
Keyed async channel.

One FIFO per key. Producers push values for a key, a single consumer per key
awaits them with `next()`. Closing a key wakes every waiting consumer with
`DONE` and drops whatever was still queued.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Hashable

from shared.logging import get_logger

log = get_logger("triage", "channel")


class _Done:
    """Sentinel returned by `next()` once a key is closed and drained."""

    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()


class ChannelClosedError(Exception):
    """Raised when pushing to a key that has been closed."""
    pass


@dataclass
class _Slot:
    values: deque = field(default_factory=deque)
    waiters: deque = field(default_factory=deque)
    closed: bool = False


class KeyedChannel:
    """
    Per-key producer/consumer channel.

    Values pushed for the same key come out of `next(key)` in push order.
    Different keys are fully independent.
    """

    def __init__(self):
        self._slots: dict[Hashable, _Slot] = {}

    def register(self, key: Hashable) -> bool:
        """
        Create the slot for a key if it does not exist yet.

        Returns True if the slot was created by this call.
        """
        if key in self._slots:
            return False
        self._slots[key] = _Slot()
        return True

    def push(self, key: Hashable, value: Any) -> None:
        """Deliver a value to a waiting consumer, or queue it."""
        self.register(key)
        slot = self._slots[key]
        if slot.closed:
            raise ChannelClosedError(f"Channel for {key!r} is closed")

        while slot.waiters:
            waiter = slot.waiters.popleft()
            if not waiter.done():
                waiter.set_result(value)
                return

        slot.values.append(value)

    async def next(self, key: Hashable) -> Any:
        """
        Get the next value for a key.

        Suspends until a value is pushed. Returns `DONE` when the key is
        closed and nothing is left.
        """
        self.register(key)
        slot = self._slots[key]

        if slot.values:
            return slot.values.popleft()
        if slot.closed:
            return DONE

        waiter = asyncio.get_running_loop().create_future()
        slot.waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in slot.waiters:
                slot.waiters.remove(waiter)

    async def consume(self, key: Hashable) -> AsyncIterator[Any]:
        """Iterate values for a key until it is closed."""
        while True:
            value = await self.next(key)
            if value is DONE:
                return
            yield value

    def close(self, key: Hashable) -> None:
        """Close a key: wake all waiters with DONE and drop queued values."""
        slot = self._slots.get(key)
        if slot is None:
            return

        slot.closed = True
        dropped = len(slot.values)
        slot.values.clear()

        waiters = list(slot.waiters)
        slot.waiters.clear()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(DONE)

        log.debug("triage.channel.closed", key=key, woken=len(waiters), dropped=dropped)

    def close_all(self) -> None:
        """Close every key."""
        for key in list(self._slots):
            self.close(key)

    def discard(self, key: Hashable) -> None:
        """Forget a key entirely. Called by the consumer after it saw DONE."""
        self._slots.pop(key, None)

    def is_closed(self, key: Hashable) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.closed

    def depth(self, key: Hashable) -> int:
        """Number of values queued (not yet delivered) for a key."""
        slot = self._slots.get(key)
        return len(slot.values) if slot else 0

    def keys(self) -> list:
        return list(self._slots)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)
