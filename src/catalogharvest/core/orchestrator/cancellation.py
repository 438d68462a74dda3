"""
Cooperative cancellation for run attempts.

Each attempt owns one token. Extractors poll it between items and use
``sleep`` for the inter-item pause so a cancel request is noticed without
waiting out the full delay. In-flight requests are never interrupted.
"""

from __future__ import annotations

import asyncio

from catalogharvest.core.errors import RunCancelled


class CancellationToken:
    """One-shot stop signal shared by the orchestrator and an extractor."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """Signal the attempt to stop.

        Returns:
            False if the token was already cancelled (the first reason wins)
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        """Raise RunCancelled once a stop has been requested."""
        if self._event.is_set():
            raise RunCancelled(self.reason or "Cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Pause for ``seconds``, waking early on cancellation.

        Returns:
            True if the pause ended because of cancellation
        """
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait(self) -> None:
        await self._event.wait()
