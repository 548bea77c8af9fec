"""
Draft router.

Server side of draft reconciliation: clients persist versioned snapshots
and fetch the server copy when resuming.
"""

from fastapi import APIRouter

from intakeflow.api.dependencies import ActorDep, DraftRepositoryDep
from intakeflow.exceptions.domain import DraftNotFoundError
from intakeflow.models import DraftSnapshot, PersistOutcome
from intakeflow.utils.logger import logger

router = APIRouter(
    tags=["Drafts"],
    responses={
        404: {"description": "Not found"},
        409: {"description": "Session already submitted"},
    },
)


@router.post("", response_model=PersistOutcome)
async def persist_draft(
    snapshot: DraftSnapshot,
    repo: DraftRepositoryDep,
    actor: ActorDep,
) -> PersistOutcome:
    """Persist a snapshot.

    A stale or diverged snapshot is not an error: the response has status
    ``conflict`` and carries the server copy.
    """
    outcome = await repo.save(snapshot)
    if not outcome.ok:
        logger.info(f"Draft conflict for {snapshot.session_id} from {actor.id}")
    return outcome


@router.get("/{session_id}", response_model=DraftSnapshot)
async def get_draft(session_id: str, repo: DraftRepositoryDep, _actor: ActorDep) -> DraftSnapshot:
    """Get the server copy of a session's draft."""
    record = await repo.get_by_session(session_id)
    if record is None:
        raise DraftNotFoundError(session_id)
    return record.to_snapshot()
