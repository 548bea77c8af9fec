"""Tests for the case lifecycle, review claims and the claim sweep."""

import asyncio

import pytest
import pytest_asyncio

from intakeflow.exceptions.domain import (
    AuditWriteFailure,
    AuthorizationError,
    BusinessRuleViolationError,
    CaseNotFoundError,
    InvalidTransitionError,
)
from intakeflow.models import TERMINAL_STATUSES, ActorRole, AuditAction, CaseStatus
from intakeflow.repositories import CaseRepository
from intakeflow.services.case_lifecycle import (
    ALLOWED_TRANSITIONS,
    CaseLifecycle,
    can_transition,
    check_claim_fields,
    check_transition,
)
from intakeflow.services.claim_sweep import ClaimSweepService
from intakeflow.services.claims import ClaimManager
from intakeflow.services.intake_service import IntakeService
from tests.conftest import FailingAuditRepository, actions, read_audit, read_case


@pytest_asyncio.fixture
async def case(make_case):
    return await make_case()


@pytest.fixture
def manager(test_session, clock) -> ClaimManager:
    return ClaimManager(test_session, ttl_minutes=30, clock=clock)


# ===================================================================
# Transition table
# ===================================================================


class TestTransitionTable:
    """Tests for the lifecycle transition table."""

    def test_terminal_statuses_have_no_exits(self):
        assert TERMINAL_STATUSES == {CaseStatus.completed, CaseStatus.cancelled, CaseStatus.expired}
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_decisions_only_complete(self):
        for status in (CaseStatus.approved, CaseStatus.declined):
            assert ALLOWED_TRANSITIONS[status] == frozenset({CaseStatus.completed})

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(CaseStatus)

    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (CaseStatus.paid, CaseStatus.approved),
            (CaseStatus.approved, CaseStatus.paid),
            (CaseStatus.declined, CaseStatus.in_review),
            (CaseStatus.completed, CaseStatus.cancelled),
            (CaseStatus.pending_info, CaseStatus.approved),
        ],
    )
    def test_invalid_transitions(self, from_status, to_status):
        assert not can_transition(from_status, to_status)
        with pytest.raises(InvalidTransitionError):
            check_transition(from_status, to_status)

    def test_claim_fields_follow_status(self):
        with pytest.raises(BusinessRuleViolationError):
            check_claim_fields(CaseStatus.in_review, None)
        with pytest.raises(BusinessRuleViolationError):
            check_claim_fields(CaseStatus.paid, "dr-a")
        check_claim_fields(CaseStatus.pending_info, "dr-a")
        check_claim_fields(CaseStatus.escalated, None)


class TestCaseLifecycle:
    """Tests for CaseLifecycle.transition."""

    @pytest.mark.asyncio
    async def test_transition_writes_one_audit_entry(self, test_session, case, clock):
        lifecycle = CaseLifecycle(test_session, clock=clock)
        async with lifecycle.unit_of_work("test cancel"):
            current = await lifecycle.cases.get_for_update(case.id)
            updated = await lifecycle.transition(
                current, CaseStatus.cancelled, "admin-1", ActorRole.admin, AuditAction.cancel
            )
        assert updated.status == CaseStatus.cancelled

        entries = await read_audit(test_session, case.id)
        assert actions(entries) == [AuditAction.submitted, AuditAction.cancel]
        assert entries[-1].from_status == CaseStatus.paid
        assert entries[-1].to_status == CaseStatus.cancelled
        assert entries[-1].actor_role == ActorRole.admin

    @pytest.mark.asyncio
    async def test_invalid_transition_is_rejected(self, test_session, case, clock):
        lifecycle = CaseLifecycle(test_session, clock=clock)
        with pytest.raises(InvalidTransitionError):
            async with lifecycle.unit_of_work("test approve"):
                current = await lifecycle.cases.get_for_update(case.id)
                await lifecycle.transition(
                    current, CaseStatus.approved, "dr-a", ActorRole.doctor, AuditAction.approve
                )
        assert (await read_case(test_session, case.id)).status == CaseStatus.paid

    @pytest.mark.asyncio
    async def test_stale_read_loses_compare_and_set(
        self, test_session, session_factory, case, clock
    ):
        lifecycle = CaseLifecycle(test_session, clock=clock)
        async with lifecycle.unit_of_work("stale read"):
            stale = await lifecycle.cases.get(case.id)

        async with session_factory() as other:
            await ClaimManager(other, clock=clock).claim(case.id, "dr-b")

        with pytest.raises(BusinessRuleViolationError):
            async with lifecycle.unit_of_work("stale cancel"):
                await lifecycle.transition(
                    stale, CaseStatus.cancelled, "admin-1", ActorRole.admin, AuditAction.cancel
                )
        current = await read_case(test_session, case.id)
        assert current.status == CaseStatus.in_review
        assert current.claimed_by == "dr-b"

    @pytest.mark.asyncio
    async def test_audit_failure_rolls_back_transition(self, test_session, case, clock):
        lifecycle = CaseLifecycle(
            test_session,
            audit=FailingAuditRepository(test_session, {AuditAction.cancel}),
            clock=clock,
        )
        with pytest.raises(AuditWriteFailure):
            async with lifecycle.unit_of_work("failing cancel"):
                current = await lifecycle.cases.get_for_update(case.id)
                await lifecycle.transition(
                    current, CaseStatus.cancelled, "admin-1", ActorRole.admin, AuditAction.cancel
                )

        assert (await read_case(test_session, case.id)).status == CaseStatus.paid
        assert actions(await read_audit(test_session, case.id)) == [AuditAction.submitted]


# ===================================================================
# ClaimManager
# ===================================================================


class TestClaimManager:
    """Tests for claiming and releasing cases."""

    @pytest.mark.asyncio
    async def test_claim_paid_case(self, test_session, manager, case, clock):
        result = await manager.claim(case.id, "dr-a")
        assert result.granted
        assert result.status == CaseStatus.in_review
        assert result.claimed_at == clock.now

        current = await read_case(test_session, case.id)
        assert current.claimed_by == "dr-a"
        assert actions(await read_audit(test_session, case.id))[-1] == AuditAction.claim

    @pytest.mark.asyncio
    async def test_second_reviewer_is_denied(self, test_session, manager, case):
        await manager.claim(case.id, "dr-a")
        result = await manager.claim(case.id, "dr-b")

        assert not result.granted
        assert result.current_holder == "dr-a"
        assert "dr-a" in result.reason

        entries = await read_audit(test_session, case.id)
        denied = entries[-1]
        assert denied.action == AuditAction.claim_denied
        assert denied.actor_id == "dr-b"
        assert denied.from_status == denied.to_status == CaseStatus.in_review
        assert denied.meta["current_holder"] == "dr-a"
        assert (await read_case(test_session, case.id)).claimed_by == "dr-a"

    @pytest.mark.asyncio
    async def test_holder_renews_claim(self, test_session, manager, case, clock):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=20)
        result = await manager.claim(case.id, "dr-a")

        assert result.granted
        assert result.renewed
        current = await read_case(test_session, case.id)
        assert current.claimed_at.replace(tzinfo=None) == clock.now.replace(tzinfo=None)
        assert actions(await read_audit(test_session, case.id))[-1] == AuditAction.claim_renewed

    @pytest.mark.asyncio
    async def test_stale_claim_can_be_taken(self, test_session, manager, case, clock):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=31)
        result = await manager.claim(case.id, "dr-b")

        assert result.granted
        entry = (await read_audit(test_session, case.id))[-1]
        assert entry.action == AuditAction.claim
        assert entry.meta == {"previous_holder": "dr-a", "reason": "stale"}

    @pytest.mark.asyncio
    async def test_live_claim_within_ttl_is_kept(self, manager, case, clock):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=29)
        assert not (await manager.claim(case.id, "dr-b")).granted

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, session_factory, case, clock):
        async with session_factory() as s1, session_factory() as s2:
            results = await asyncio.gather(
                ClaimManager(s1, clock=clock).claim(case.id, "dr-a"),
                ClaimManager(s2, clock=clock).claim(case.id, "dr-b"),
            )

        winners = [r for r in results if r.granted]
        losers = [r for r in results if not r.granted]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].current_holder == winners[0].reviewer_id

    @pytest.mark.asyncio
    async def test_only_reviewers_claim(self, manager, case):
        with pytest.raises(AuthorizationError):
            await manager.claim(case.id, "patient-1", ActorRole.patient)

    @pytest.mark.asyncio
    async def test_force_claim_is_admin_only(self, test_session, manager, case):
        await manager.claim(case.id, "dr-a")
        with pytest.raises(AuthorizationError):
            await manager.claim(case.id, "dr-b", ActorRole.doctor, force=True)

        result = await manager.claim(case.id, "admin-1", ActorRole.admin, force=True)
        assert result.granted
        entry = (await read_audit(test_session, case.id))[-1]
        assert entry.meta == {"previous_holder": "dr-a", "reason": "forced"}

    @pytest.mark.asyncio
    async def test_escalated_case_needs_admin(self, test_session, manager, case, catalog, clock):
        await manager.claim(case.id, "dr-a")
        service = IntakeService(test_session, catalog, clock=clock)
        escalated = await service.escalate(case.id, "dr-a", "Needs a specialist")
        assert escalated.status == CaseStatus.escalated
        assert escalated.claimed_by is None

        denied = await manager.claim(case.id, "dr-b")
        assert not denied.granted
        assert "admin" in denied.reason

        granted = await manager.claim(case.id, "admin-1", ActorRole.admin)
        assert granted.granted

    @pytest.mark.asyncio
    async def test_waiting_case_cannot_be_reclaimed_by_holder(
        self, test_session, manager, case, catalog, clock
    ):
        await manager.claim(case.id, "dr-a")
        service = IntakeService(test_session, catalog, clock=clock)
        await service.request_info(case.id, "dr-a", "Please upload the sick note")

        for reviewer_id, role in (("dr-a", ActorRole.doctor), ("admin-1", ActorRole.admin)):
            result = await manager.claim(case.id, reviewer_id, role)
            assert not result.granted
            assert result.status == CaseStatus.pending_info
            assert "patient" in result.reason

        current = await read_case(test_session, case.id)
        assert current.status == CaseStatus.pending_info
        assert current.claimed_by == "dr-a"
        assert current.info_request == "Please upload the sick note"
        assert actions(await read_audit(test_session, case.id))[-1] == AuditAction.claim_denied

    @pytest.mark.asyncio
    async def test_finished_case_cannot_be_claimed(self, test_session, manager, case, catalog):
        await IntakeService(test_session, catalog).cancel(case.id, "patient-1", ActorRole.patient)
        result = await manager.claim(case.id, "dr-a")
        assert not result.granted
        assert result.status == CaseStatus.cancelled

    @pytest.mark.asyncio
    async def test_unknown_case(self, manager):
        with pytest.raises(CaseNotFoundError):
            await manager.claim(9999, "dr-a")

    @pytest.mark.asyncio
    async def test_release_by_holder(self, test_session, manager, case):
        await manager.claim(case.id, "dr-a")
        result = await manager.release(case.id, "dr-a")
        assert result.released
        current = await read_case(test_session, case.id)
        assert current.status == CaseStatus.paid
        assert current.claimed_by is None
        assert current.claimed_at is None
        assert actions(await read_audit(test_session, case.id))[-1] == AuditAction.release

    @pytest.mark.asyncio
    async def test_release_by_other_reviewer_is_refused(self, test_session, manager, case):
        await manager.claim(case.id, "dr-a")
        result = await manager.release(case.id, "dr-b")
        assert not result.released
        assert result.current_holder == "dr-a"
        assert (await read_case(test_session, case.id)).claimed_by == "dr-a"


# ===================================================================
# Sweep
# ===================================================================


class TestClaimSweep:
    """Tests for stale claim expiry and abandoned case expiry."""

    @pytest.mark.asyncio
    async def test_sweep_expires_stale_claims(self, test_session, manager, case, clock):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=31)

        assert await manager.sweep_expired() == 1
        current = await read_case(test_session, case.id)
        assert current.status == CaseStatus.paid
        assert current.claimed_by is None

        entry = (await read_audit(test_session, case.id))[-1]
        assert entry.action == AuditAction.claim_expired
        assert entry.actor_role == ActorRole.system
        assert entry.meta["previous_holder"] == "dr-a"

        assert await manager.sweep_expired() == 0

    @pytest.mark.asyncio
    async def test_sweep_keeps_live_claims(self, test_session, manager, case, clock):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=10)
        assert await manager.sweep_expired() == 0
        assert (await read_case(test_session, case.id)).claimed_by == "dr-a"

    @pytest.mark.asyncio
    async def test_sweep_service_uses_its_own_sessions(
        self, test_session, session_factory, manager, case, clock
    ):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=45)
        service = ClaimSweepService(
            sweep_interval=1,
            ttl_minutes=30,
            expiry_hours=0,
            session_factory=session_factory,
            clock=clock,
        )
        assert await service.sweep_once() == 1
        assert (await read_case(test_session, case.id)).status == CaseStatus.paid

    @pytest.mark.asyncio
    async def test_abandoned_cases_expire(self, test_session, session_factory, make_case, clock):
        waiting = await make_case()
        claimed = await make_case()
        await ClaimManager(test_session, clock=clock).claim(claimed.id, "dr-a")
        clock.advance(hours=25)

        service = ClaimSweepService(
            ttl_minutes=30 * 60, expiry_hours=24, session_factory=session_factory, clock=clock
        )
        assert await service.sweep_once() == 1

        assert (await read_case(test_session, waiting.id)).status == CaseStatus.expired
        assert (await read_case(test_session, claimed.id)).status == CaseStatus.in_review
        assert actions(await read_audit(test_session, waiting.id))[-1] == AuditAction.expire

    @pytest.mark.asyncio
    async def test_waiting_case_expires_from_info_request(
        self, test_session, session_factory, manager, case, catalog, clock
    ):
        clock.advance(hours=25)
        await manager.claim(case.id, "dr-a")
        await IntakeService(test_session, catalog, clock=clock).request_info(
            case.id, "dr-a", "Please upload the sick note"
        )
        service = ClaimSweepService(
            ttl_minutes=30 * 60, expiry_hours=24, session_factory=session_factory, clock=clock
        )

        assert await service.sweep_once() == 0
        assert (await read_case(test_session, case.id)).status == CaseStatus.pending_info

        clock.advance(hours=25)
        assert await service.sweep_once() == 1
        assert (await read_case(test_session, case.id)).status == CaseStatus.expired
        assert actions(await read_audit(test_session, case.id))[-1] == AuditAction.expire

    @pytest.mark.asyncio
    async def test_case_picked_up_after_scan_is_not_expired(
        self, test_session, session_factory, manager, case, clock, monkeypatch
    ):
        scanned = [await read_case(test_session, case.id)]
        await manager.claim(case.id, "dr-a")
        clock.advance(hours=25)

        lifecycle = CaseLifecycle(test_session, clock=clock)

        async def outdated_scan(_idle_before):
            return scanned

        monkeypatch.setattr(lifecycle.cases, "find_expirable", outdated_scan)
        service = ClaimSweepService(
            ttl_minutes=30 * 60, expiry_hours=24, session_factory=session_factory, clock=clock
        )

        assert await service.expire_abandoned(lifecycle) == 0
        current = await read_case(test_session, case.id)
        assert current.status == CaseStatus.in_review
        assert current.claimed_by == "dr-a"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, clock):
        service = ClaimSweepService(sweep_interval=60, session_factory=session_factory, clock=clock)
        await service.start()
        assert service.is_running
        await service.stop()
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_repository_lists_stale_claims(self, test_session, manager, case, clock):
        await manager.claim(case.id, "dr-a")
        clock.advance(minutes=31)
        stale = await CaseRepository(test_session).find_stale_claims(
            manager.stale_before(clock())
        )
        await test_session.commit()
        assert [c.id for c in stale] == [case.id]
