"""
Background autosave for flow sessions.
"""

import asyncio
import contextlib

from ...settings import settings
from ...utils.logger import logger
from ..flow_session import FlowSession
from .reconciler import DraftReconciler


class DraftAutosaver:
    """Periodically persists a dirty flow session.

    This is the only background activity attached to a session. Failed saves
    are logged and retried on the next tick; they never interrupt answering.
    """

    def __init__(
        self,
        session: FlowSession,
        reconciler: DraftReconciler,
        interval: float | None = None,
    ):
        """Initialize the autosaver.

        Args:
            session: Session to save
            reconciler: Reconciler used for writes
            interval: Seconds between saves
        """
        self.session = session
        self.reconciler = reconciler
        self.interval = interval if interval is not None else settings.draft_autosave_interval
        self.is_running = False
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the autosave loop."""
        if self.is_running:
            logger.warning(f"Autosave for {self.session.session_id} already running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._autosave_loop())
        logger.debug(f"Autosave started for {self.session.session_id} every {self.interval}s")

    async def stop(self) -> None:
        """Stop the autosave loop."""
        self.is_running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.debug(f"Autosave stopped for {self.session.session_id}")

    async def _autosave_loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.interval)
            await self.save_once()

    async def save_once(self) -> bool:
        """Save the session if it is dirty.

        Returns:
            True if the server now holds the current version
        """
        async with self._lock:
            outcome = await self.reconciler.save_session(self.session)
        return outcome is not None and outcome.ok

    async def flush_now(self, timeout: float | None = None) -> bool:
        """Best-effort save on navigation away, bounded by ``timeout`` seconds.

        Returns:
            True if the save completed in time
        """
        timeout = timeout if timeout is not None else settings.draft_flush_timeout
        try:
            return await asyncio.wait_for(self.save_once(), timeout=timeout)
        except TimeoutError:
            logger.warning(f"Flush of {self.session.session_id} did not finish in {timeout}s")
            return False
