"""Background sweeper that reclaims expired sessions.

Polls on a fixed interval rather than scheduling a timer per session, so a
missed tick only delays cleanup until the next one.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from sandboxer.logging import get_logger

if TYPE_CHECKING:
    from sandboxer.session.session_manager import SessionManager

_log = get_logger("session.sweeper")

# Default poll interval in seconds
DEFAULT_SWEEP_INTERVAL = 300.0


class ExpirySweeper:
    """Periodically calls SessionManager.sweep_expired().

    Errors in a sweep are logged and the loop keeps running.
    """

    def __init__(
        self,
        manager: SessionManager,
        interval: float = DEFAULT_SWEEP_INTERVAL,
    ) -> None:
        """Initialize the sweeper.

        Args:
            manager: Session manager whose expired sessions are destroyed.
            interval: Seconds between sweeps.
        """
        self._manager = manager
        self._interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._running

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            await asyncio.sleep(self._interval)

            if not self._running:
                break

            try:
                removed = await self._manager.sweep_expired()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                _log.error("Error sweeping expired sessions: %s", e)
                continue
            self.sweeps += 1
            if removed:
                _log.info("Swept %d expired sessions", removed)

    def start(self) -> None:
        """Start sweeping.

        Creates an async task that polls on the interval.
        Must be called from within an async context.
        """
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        _log.debug("Expiry sweeper started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        """Stop sweeping and wait for the loop to exit."""
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        _log.debug("Expiry sweeper stopped")

    async def __aenter__(self) -> ExpirySweeper:
        """Async context manager entry."""
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.stop()
