"""
Draft reconciliation between a local cache and the server copy.

Writes go to the local cache first and then to the server with retries and
exponential backoff. On resume both copies are compared by
``resolve_conflict``: the higher version wins and a tie goes to the server.
"""

from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...exceptions.domain import AlreadySubmittedError, DraftPersistError
from ...models import DraftOrigin, DraftSnapshot, PersistOutcome
from ...settings import settings
from ...utils.logger import logger
from ..flow_session import FlowSession
from .cache import DraftCache
from .remote import DraftRemote


def resolve_conflict(
    local: DraftSnapshot | None, server: DraftSnapshot | None
) -> DraftSnapshot | None:
    """Pick the snapshot a session should resume from.

    The higher version wins. At equal versions the server copy wins, even
    when the content differs, because it is the durable one.

    Args:
        local: Snapshot from the local cache
        server: Snapshot from the server

    Returns:
        The winning snapshot, or None if neither exists
    """
    if local is None:
        return server
    if server is None:
        return local
    if local.version > server.version:
        return local
    return server


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Draft sync attempt {retry_state.attempt_number} failed: {exc}")


class DraftReconciler:
    """Keeps flow session drafts in a local cache and on the server.

    Args:
        remote: Server copy of drafts
        cache: Local cache of drafts
        retry_attempts: Attempts per server call
        retry_min_wait: First backoff delay in seconds
        retry_max_wait: Upper bound for backoff delay in seconds
    """

    def __init__(
        self,
        remote: DraftRemote,
        cache: DraftCache,
        retry_attempts: int | None = None,
        retry_min_wait: float = 0.5,
        retry_max_wait: float | None = None,
    ):
        self.remote = remote
        self.cache = cache
        self.retry_attempts = retry_attempts or settings.draft_retry_attempts
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = (
            retry_max_wait if retry_max_wait is not None else settings.draft_retry_max_wait
        )

    async def _with_retry[T](self, operation: Callable[[], Awaitable[T]], what: str) -> T:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(
                    multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait
                ),
                retry=retry_if_exception_type(Exception)
                & retry_if_not_exception_type(AlreadySubmittedError),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    return await operation()
        except AlreadySubmittedError:
            raise
        except Exception as e:
            raise DraftPersistError(
                f"Could not {what} after {self.retry_attempts} attempts: {e}"
            ) from e
        raise DraftPersistError(f"Could not {what}")

    async def _cache_store(self, snapshot: DraftSnapshot) -> None:
        try:
            await self.cache.store(snapshot)
        except OSError as e:
            logger.warning(f"Local draft cache write failed for {snapshot.session_id}: {e}")

    async def persist(self, snapshot: DraftSnapshot) -> PersistOutcome:
        """Write a snapshot locally, then to the server.

        Re-persisting an identical snapshot is a no-op on the server and does
        not change its version.

        Args:
            snapshot: Snapshot to persist

        Returns:
            ``ok`` or ``conflict`` with the server copy

        Raises:
            DraftPersistError: If the server could not be reached after retries
            AlreadySubmittedError: If the session has been submitted
        """
        await self._cache_store(snapshot.as_origin(DraftOrigin.local))
        outcome = await self._with_retry(
            lambda: self.remote.persist(snapshot), f"persist draft {snapshot.session_id}"
        )
        if outcome.ok:
            logger.debug(
                f"Draft {snapshot.session_id} v{snapshot.version} persisted"
                f"{' (unchanged)' if outcome.unchanged else ''}"
            )
        else:
            server_version = outcome.server.version if outcome.server else None
            logger.warning(
                f"Draft {snapshot.session_id} v{snapshot.version} conflicts with "
                f"server v{server_version}"
            )
        return outcome

    async def resume(self, session_id: str) -> DraftSnapshot | None:
        """Load the snapshot a session should continue from.

        When the server is unreachable the local copy is used. When the local
        copy wins it is pushed to the server on a best-effort basis.

        Returns:
            Winning snapshot, or None if the session has no draft anywhere
        """
        local = await self.cache.load(session_id)
        try:
            server = await self._with_retry(
                lambda: self.remote.fetch(session_id), f"fetch draft {session_id}"
            )
        except DraftPersistError as e:
            logger.warning(f"Resuming {session_id} from local cache only: {e}")
            server = None

        winner = resolve_conflict(local, server)
        if winner is None:
            return None

        await self._cache_store(winner)
        local_is_newer = server is None or (local is not None and local.version > server.version)
        if local is not None and winner is local and local_is_newer:
            try:
                await self.remote.persist(local)
            except Exception as e:
                logger.warning(f"Could not push newer local draft {session_id}: {e}")
        return winner

    async def save_session(self, session: FlowSession) -> PersistOutcome | None:
        """Persist a dirty session without ever raising.

        Returns:
            The outcome, or None if the session was clean or the save failed
        """
        if not session.dirty or session.is_submitted:
            return None
        snapshot = session.snapshot()
        try:
            outcome = await self.persist(snapshot)
        except (DraftPersistError, AlreadySubmittedError) as e:
            logger.warning(f"Autosave of {session.session_id} failed: {e}")
            return None
        if outcome.ok:
            session.mark_synced(snapshot.version)
        return outcome

    async def flush_for_submit(self, session: FlowSession) -> DraftSnapshot:
        """Validate the session and make the final persist that submission needs.

        On failure the session goes back to ``ready``.

        Raises:
            KnockoutError: If a knockout flag is present
            ValidationError: If visible answers are missing or invalid
            DraftPersistError: If the final persist failed or conflicted
        """
        snapshot = session.begin_submit()
        try:
            outcome = await self.persist(snapshot)
        except (DraftPersistError, AlreadySubmittedError):
            session.abort_submit()
            raise
        if not outcome.ok:
            session.abort_submit()
            raise DraftPersistError(
                f"Server holds a different draft for {session.session_id}; resume before submitting"
            )
        session.mark_synced(snapshot.version)
        return outcome.snapshot or snapshot
