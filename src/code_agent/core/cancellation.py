"""Cooperative cancellation shared by the agent loop and tools."""

import asyncio
from typing import Optional

from ..errors import cancelled


class CancellationToken:
    """A one-shot cancellation signal backed by an asyncio.Event."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Signal cancellation. Repeated calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        """Raise CANCELLED if the token has fired."""
        if self.cancelled:
            raise cancelled(operation)
