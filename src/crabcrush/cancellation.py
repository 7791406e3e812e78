"""
Cooperative cancellation.

A single CancellationToken is created by the caller (usually the gateway,
when a newer message for the same session arrives) and threaded down
through the agent runtime, the model router and the provider adapter.
Nothing is interrupted forcibly: each layer checks the token or races
its pending I/O against wait().
"""

import asyncio


class CancellationToken:
    """A one-shot cancellation flag that can be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    def cancel(self, reason: str = "") -> None:
        """Fire the token. Further calls are no-ops."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationToken({state})"
