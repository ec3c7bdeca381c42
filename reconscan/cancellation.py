"""
Cooperative cancellation tokens.

A scan owns a root token; every probe invocation receives a child. Cancelling
a parent cancels all of its children, cancelling a child leaves the parent
and its siblings untouched.
"""
import asyncio
from typing import List, Optional


class CancellationToken:
    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._children: List["CancellationToken"] = []
        self.reason: Optional[str] = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def release(self, child: "CancellationToken") -> None:
        """Forget a finished child so long scans don't accumulate tokens."""
        try:
            self._children.remove(child)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise asyncio.CancelledError(self.reason)
