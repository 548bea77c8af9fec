"""
Background service that expires stale review claims.
"""

import asyncio
import contextlib
from datetime import timedelta

from ..exceptions.domain import BusinessRuleViolationError
from ..models import ActorRole, AuditAction, CaseStatus, utcnow
from ..repositories.case_repository import abandoned_since
from ..settings import settings
from ..utils.db_manager import db_manager
from ..utils.logger import logger
from .case_lifecycle import CaseLifecycle, Clock
from .claims import ClaimManager
from .drafts.remote import SessionContextFactory


class ClaimSweepService:
    """Periodically returns stale claims to the queue and expires abandoned cases."""

    def __init__(
        self,
        sweep_interval: int | None = None,
        ttl_minutes: int | None = None,
        expiry_hours: int | None = None,
        session_factory: SessionContextFactory | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize the sweep service.

        Args:
            sweep_interval: Interval between sweeps in seconds
            ttl_minutes: Claim staleness window
            expiry_hours: Age after which untouched cases expire; 0 disables
            session_factory: Source of database sessions
            clock: Source of the current time
        """
        self.sweep_interval = sweep_interval or settings.claim_sweep_interval
        self.ttl_minutes = ttl_minutes if ttl_minutes is not None else settings.claim_ttl_minutes
        self.expiry_hours = (
            expiry_hours if expiry_hours is not None else settings.case_expiry_hours
        )
        self.session_factory = session_factory or db_manager.get_async_session_context
        self.clock = clock
        self.is_running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the sweep service."""
        if self.is_running:
            logger.warning("Claim sweep service already running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Claim sweep service started (every {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the sweep service."""
        self.is_running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Claim sweep service stopped")

    async def _sweep_loop(self) -> None:
        while self.is_running:
            try:
                await self.sweep_once()
                await asyncio.sleep(self.sweep_interval)
            except Exception as e:
                logger.error(f"Error in claim sweep: {e}")
                await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self) -> int:
        """Perform a single sweep.

        Returns:
            Number of cases whose claim was released or that were expired
        """
        async with self.session_factory() as session:
            manager = ClaimManager(session, ttl_minutes=self.ttl_minutes, clock=self.clock)
            released = await manager.sweep_expired()
            expired = 0
            if self.expiry_hours > 0:
                expired = await self.expire_abandoned(manager.lifecycle)

        if released or expired:
            logger.info(f"Claim sweep: released {released} claims, expired {expired} cases")
        else:
            logger.debug("Claim sweep: nothing to do")
        return released + expired

    async def expire_abandoned(self, lifecycle: CaseLifecycle) -> int:
        """Expire cases left untouched for ``expiry_hours``.

        ``paid`` cases count from submission and ``pending_info`` cases from the
        information request. Each case is re-checked under its own lock, so one
        that was claimed or answered after the scan is skipped.
        """
        cutoff = self.clock() - timedelta(hours=self.expiry_hours)
        async with lifecycle.unit_of_work("abandoned case scan"):
            candidates = [c.id for c in await lifecycle.cases.find_expirable(cutoff)]

        expired = 0
        for case_id in candidates:
            try:
                async with lifecycle.unit_of_work(f"expiry of case {case_id}"):
                    case = await lifecycle.cases.get_for_update(case_id)  # type: ignore[arg-type]
                    await lifecycle.transition(
                        case,
                        CaseStatus.expired,
                        actor_id="system",
                        actor_role=ActorRole.system,
                        action=AuditAction.expire,
                        meta={"expiry_hours": self.expiry_hours},
                        expected=abandoned_since(cutoff),
                    )
            except BusinessRuleViolationError:
                logger.debug(f"Case {case_id} moved on before it could expire")
                continue
            expired += 1
        return expired


# Global service instance
claim_sweep_service = ClaimSweepService()
