"""
Draft persistence for flow sessions.

Example usage:
    reconciler = DraftReconciler(
        RepositoryDraftRemote(db_manager.get_async_session_context),
        FileDraftCache(settings.storage_path + "/drafts"),
    )
    snapshot = await reconciler.resume(session_id)
    session = FlowSession.restore(catalog.get(snapshot.flow_id, snapshot.flow_version), snapshot)
    autosaver = DraftAutosaver(session, reconciler)
    await autosaver.start()
"""

from .autosave import DraftAutosaver
from .cache import DraftCache, FileDraftCache, InMemoryDraftCache
from .reconciler import DraftReconciler, resolve_conflict
from .remote import DraftRemote, HttpDraftRemote, RepositoryDraftRemote

__all__ = [
    "DraftAutosaver",
    "DraftCache",
    "DraftReconciler",
    "DraftRemote",
    "FileDraftCache",
    "HttpDraftRemote",
    "InMemoryDraftCache",
    "RepositoryDraftRemote",
    "resolve_conflict",
]
