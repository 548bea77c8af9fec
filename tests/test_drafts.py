"""Tests for draft persistence: repository, reconciler, caches and autosave."""

import asyncio

import pytest
import pytest_asyncio

from intakeflow.exceptions.domain import AlreadySubmittedError, DraftPersistError
from intakeflow.models import DraftOrigin, DraftSnapshot, PersistOutcome
from intakeflow.repositories import DraftRepository
from intakeflow.services.drafts import (
    DraftAutosaver,
    DraftReconciler,
    FileDraftCache,
    InMemoryDraftCache,
    RepositoryDraftRemote,
    resolve_conflict,
)
from intakeflow.services.flow_session import FlowSession, SessionState
from tests.conftest import TEST_FLOW, VALID_ANSWERS


def make_snapshot(version: int = 1, session_id: str = "sess-1", **answers) -> DraftSnapshot:
    return DraftSnapshot(
        session_id=session_id,
        flow_id=TEST_FLOW["id"],
        flow_version=TEST_FLOW["version"],
        answers=answers or {"cert_type": "work"},
        version=version,
    )


class FlakyRemote:
    """Remote that fails a number of times before delegating."""

    def __init__(self, inner, failures: int, error: Exception | None = None):
        self.inner = inner
        self.failures = failures
        self.error = error or ConnectionError("network down")
        self.calls = 0

    async def persist(self, snapshot: DraftSnapshot) -> PersistOutcome:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return await self.inner.persist(snapshot)

    async def fetch(self, session_id: str) -> DraftSnapshot | None:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return await self.inner.fetch(session_id)


class SlowRemote:
    async def persist(self, snapshot: DraftSnapshot) -> PersistOutcome:
        await asyncio.sleep(5)
        return PersistOutcome(status="ok", snapshot=snapshot)

    async def fetch(self, session_id: str) -> DraftSnapshot | None:
        return None


@pytest.fixture
def remote(session_factory) -> RepositoryDraftRemote:
    return RepositoryDraftRemote(session_factory)


@pytest.fixture
def cache() -> InMemoryDraftCache:
    return InMemoryDraftCache()


def fast_reconciler(remote, cache, attempts: int = 3) -> DraftReconciler:
    return DraftReconciler(
        remote, cache, retry_attempts=attempts, retry_min_wait=0.001, retry_max_wait=0.01
    )


# ===================================================================
# Conflict resolution
# ===================================================================


class TestResolveConflict:
    """Tests for resolve_conflict."""

    def test_missing_copies(self):
        snapshot = make_snapshot()
        assert resolve_conflict(None, None) is None
        assert resolve_conflict(snapshot, None) is snapshot
        assert resolve_conflict(None, snapshot) is snapshot

    def test_higher_version_wins(self):
        local, server = make_snapshot(3), make_snapshot(2).as_origin(DraftOrigin.server)
        assert resolve_conflict(local, server) is local
        assert resolve_conflict(make_snapshot(1), server) is server

    def test_server_wins_a_tie(self):
        local = make_snapshot(2, cert_type="study")
        server = make_snapshot(2, cert_type="carer").as_origin(DraftOrigin.server)
        assert resolve_conflict(local, server) is server


# ===================================================================
# DraftRepository
# ===================================================================


class TestDraftRepository:
    """Tests for DraftRepository.save."""

    @pytest_asyncio.fixture
    async def repo(self, test_session):
        return DraftRepository(test_session)

    @pytest.mark.asyncio
    async def test_first_save_creates_row(self, repo):
        outcome = await repo.save(make_snapshot(1))
        assert outcome.ok
        assert outcome.snapshot.version == 1
        assert outcome.snapshot.origin == DraftOrigin.server

    @pytest.mark.asyncio
    async def test_higher_version_is_accepted(self, repo):
        await repo.save(make_snapshot(1))
        outcome = await repo.save(make_snapshot(2, cert_type="study"))
        assert outcome.ok
        stored = await repo.get_by_session("sess-1")
        assert stored.version == 2
        assert stored.answers == {"cert_type": "study"}

    @pytest.mark.asyncio
    async def test_identical_snapshot_is_a_noop(self, repo):
        await repo.save(make_snapshot(1))
        outcome = await repo.save(make_snapshot(1))
        assert outcome.ok
        assert outcome.unchanged
        assert outcome.snapshot.version == 1

    @pytest.mark.asyncio
    async def test_same_version_with_other_content_conflicts(self, repo):
        await repo.save(make_snapshot(2))
        outcome = await repo.save(make_snapshot(2, cert_type="carer"))
        assert outcome.status == "conflict"
        assert outcome.server.answers == {"cert_type": "work"}

    @pytest.mark.asyncio
    async def test_older_version_conflicts(self, repo):
        await repo.save(make_snapshot(3))
        outcome = await repo.save(make_snapshot(2, cert_type="carer"))
        assert not outcome.ok
        assert outcome.server.version == 3

    @pytest.mark.asyncio
    async def test_submitted_draft_is_frozen(self, repo, test_session):
        await repo.save(make_snapshot(1))
        await repo.mark_submitted("sess-1")
        await test_session.commit()
        with pytest.raises(AlreadySubmittedError):
            await repo.save(make_snapshot(2))


# ===================================================================
# DraftReconciler
# ===================================================================


class TestDraftReconciler:
    """Tests for DraftReconciler."""

    @pytest.mark.asyncio
    async def test_persist_writes_cache_then_server(self, remote, cache):
        reconciler = fast_reconciler(remote, cache)
        outcome = await reconciler.persist(make_snapshot(1))
        assert outcome.ok
        assert (await cache.load("sess-1")).version == 1
        assert (await remote.fetch("sess-1")).version == 1

    @pytest.mark.asyncio
    async def test_repersist_is_idempotent(self, remote, cache):
        reconciler = fast_reconciler(remote, cache)
        snapshot = make_snapshot(4)
        await reconciler.persist(snapshot)
        outcome = await reconciler.persist(snapshot)
        assert outcome.ok
        assert outcome.unchanged
        assert (await remote.fetch("sess-1")).version == 4

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, remote, cache):
        flaky = FlakyRemote(remote, failures=2)
        outcome = await fast_reconciler(flaky, cache).persist(make_snapshot(1))
        assert outcome.ok
        assert flaky.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, remote, cache):
        flaky = FlakyRemote(remote, failures=10)
        with pytest.raises(DraftPersistError):
            await fast_reconciler(flaky, cache, attempts=3).persist(make_snapshot(1))
        assert flaky.calls == 3
        # The local copy survives the outage
        assert (await cache.load("sess-1")).version == 1

    @pytest.mark.asyncio
    async def test_submitted_session_is_not_retried(self, remote, cache):
        flaky = FlakyRemote(remote, failures=10, error=AlreadySubmittedError("sess-1"))
        with pytest.raises(AlreadySubmittedError):
            await fast_reconciler(flaky, cache).persist(make_snapshot(1))
        assert flaky.calls == 1

    @pytest.mark.asyncio
    async def test_resume_prefers_newer_local_and_pushes_it(self, remote, cache):
        await remote.persist(make_snapshot(2))
        await cache.store(make_snapshot(3, cert_type="study"))

        winner = await fast_reconciler(remote, cache).resume("sess-1")
        assert winner.version == 3
        server = await remote.fetch("sess-1")
        assert server.version == 3
        assert server.answers == {"cert_type": "study"}

    @pytest.mark.asyncio
    async def test_resume_prefers_server_on_tie(self, remote, cache):
        await remote.persist(make_snapshot(2, cert_type="carer"))
        await cache.store(make_snapshot(2, cert_type="study"))

        winner = await fast_reconciler(remote, cache).resume("sess-1")
        assert winner.answers == {"cert_type": "carer"}
        assert winner.origin == DraftOrigin.server
        assert (await cache.load("sess-1")).answers == {"cert_type": "carer"}

    @pytest.mark.asyncio
    async def test_resume_offline_uses_local_copy(self, remote, cache):
        await cache.store(make_snapshot(5))
        flaky = FlakyRemote(remote, failures=100)
        winner = await fast_reconciler(flaky, cache, attempts=2).resume("sess-1")
        assert winner.version == 5

    @pytest.mark.asyncio
    async def test_resume_unknown_session(self, remote, cache):
        assert await fast_reconciler(remote, cache).resume("nobody") is None

    @pytest.mark.asyncio
    async def test_save_session_clears_dirty(self, remote, cache, flow_definition):
        session = FlowSession(flow_definition)
        reconciler = fast_reconciler(remote, cache)
        assert await reconciler.save_session(session) is None

        session.answer("cert_type", "work")
        outcome = await reconciler.save_session(session)
        assert outcome.ok
        assert not session.dirty

    @pytest.mark.asyncio
    async def test_save_session_swallows_outage(self, remote, cache, flow_definition):
        session = FlowSession(flow_definition)
        session.answer("cert_type", "work")
        flaky = FlakyRemote(remote, failures=10)
        assert await fast_reconciler(flaky, cache, attempts=2).save_session(session) is None
        assert session.dirty

    @pytest.mark.asyncio
    async def test_flush_for_submit(self, remote, cache, flow_definition):
        session = FlowSession(flow_definition)
        for question_id, value in VALID_ANSWERS.items():
            session.answer(question_id, value)

        snapshot = await fast_reconciler(remote, cache).flush_for_submit(session)
        assert session.state == SessionState.submitting
        assert snapshot.version == session.version
        assert not session.dirty

    @pytest.mark.asyncio
    async def test_flush_for_submit_conflict_returns_to_ready(
        self, remote, cache, flow_definition
    ):
        session = FlowSession(flow_definition)
        for question_id, value in VALID_ANSWERS.items():
            session.answer(question_id, value)
        await remote.persist(make_snapshot(99, session_id=session.session_id))

        with pytest.raises(DraftPersistError):
            await fast_reconciler(remote, cache).flush_for_submit(session)
        assert session.state == SessionState.ready


# ===================================================================
# Local caches and autosave
# ===================================================================


class TestFileDraftCache:
    """Tests for FileDraftCache."""

    @pytest.mark.asyncio
    async def test_store_load_remove(self, tmp_path):
        cache = FileDraftCache(tmp_path / "drafts")
        await cache.store(make_snapshot(2))
        loaded = await cache.load("sess-1")
        assert loaded.version == 2
        assert loaded.answers == {"cert_type": "work"}

        await cache.remove("sess-1")
        assert await cache.load("sess-1") is None

    @pytest.mark.asyncio
    async def test_unreadable_file_is_ignored(self, tmp_path):
        cache = FileDraftCache(tmp_path)
        await cache.store(make_snapshot())
        [path] = tmp_path.glob("*.json")
        path.write_text("{broken")
        assert await cache.load("sess-1") is None

    @pytest.mark.asyncio
    async def test_punctuation_does_not_merge_sessions(self, tmp_path):
        cache = FileDraftCache(tmp_path)
        await cache.store(make_snapshot(1, session_id="a.b", cert_type="work"))
        await cache.store(make_snapshot(4, session_id="ab", cert_type="school"))

        dotted = await cache.load("a.b")
        plain = await cache.load("ab")
        assert (dotted.session_id, dotted.version) == ("a.b", 1)
        assert (plain.session_id, plain.version) == ("ab", 4)
        assert len(list(tmp_path.glob("*.json"))) == 2

        await cache.remove("ab")
        assert await cache.load("ab") is None
        assert (await cache.load("a.b")).answers == {"cert_type": "work"}

    @pytest.mark.asyncio
    async def test_file_of_another_session_is_ignored(self, tmp_path):
        cache = FileDraftCache(tmp_path)
        await cache.store(make_snapshot(session_id="sess-1"))
        await cache.store(make_snapshot(session_id="sess-2"))
        first, second = (cache._path(s) for s in ("sess-1", "sess-2"))
        first.write_text(second.read_text())
        assert await cache.load("sess-1") is None


class TestDraftAutosaver:
    """Tests for DraftAutosaver."""

    @pytest.mark.asyncio
    async def test_save_once(self, remote, cache, flow_definition):
        session = FlowSession(flow_definition)
        session.answer("cert_type", "work")
        autosaver = DraftAutosaver(session, fast_reconciler(remote, cache), interval=60)
        assert await autosaver.save_once()
        assert not session.dirty
        assert not await autosaver.save_once()

    @pytest.mark.asyncio
    async def test_background_loop_saves(self, remote, cache, flow_definition):
        session = FlowSession(flow_definition)
        session.answer("cert_type", "work")
        autosaver = DraftAutosaver(session, fast_reconciler(remote, cache), interval=0.01)
        await autosaver.start()
        try:
            for _ in range(200):
                if not session.dirty:
                    break
                await asyncio.sleep(0.01)
        finally:
            await autosaver.stop()
        assert not session.dirty
        assert not autosaver.is_running

    @pytest.mark.asyncio
    async def test_flush_now_is_bounded(self, cache, flow_definition):
        session = FlowSession(flow_definition)
        session.answer("cert_type", "work")
        autosaver = DraftAutosaver(session, fast_reconciler(SlowRemote(), cache))
        assert not await autosaver.flush_now(timeout=0.05)
        assert session.dirty
