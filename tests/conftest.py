"""Global fixtures: a file-backed SQLite database per test, a test flow and collaborator doubles."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from intakeflow.api.app import create_app
from intakeflow.exceptions.domain import (
    AuditWriteFailure,
    NotificationError,
    RefundError,
    StorageError,
)

# Import all models to ensure metadata is populated
from intakeflow.models import *  # noqa: F403
from intakeflow.models import (
    AuditAction,
    AuditEntry,
    CaseRecord,
    DraftSnapshot,
    FlowDefinition,
)
from intakeflow.repositories import AuditRepository, CaseRepository, DraftRepository
from intakeflow.services.collaborators import JinjaDocumentRenderer, LocalBlobStorage
from intakeflow.services.intake_service import IntakeService
from intakeflow.services.rules import FlowCatalog
from intakeflow.utils.database import get_async_session
from intakeflow.utils.db_manager import create_engine_for_url

EMERGENCY_MESSAGE = "Please seek emergency care: call 000 or visit your nearest emergency department"

TEST_FLOW: dict[str, Any] = {
    "id": "med_cert_test",
    "version": 1,
    "title": "Medical certificate (test)",
    "service_type": "med_cert",
    "sections": [
        {
            "id": "safety",
            "title": "Safety",
            "questions": [
                {
                    "id": "chest_pain",
                    "label": "Do you have chest pain?",
                    "type": "boolean",
                    "flags": [
                        {
                            "id": "chest_pain",
                            "value": True,
                            "severity": "knockout",
                            "message": EMERGENCY_MESSAGE,
                        }
                    ],
                },
                {
                    "id": "pregnant",
                    "label": "Are you pregnant?",
                    "type": "boolean",
                    "required": False,
                    "flags": [
                        {
                            "id": "pregnancy",
                            "value": True,
                            "severity": "info",
                            "message": "Possible pregnancy",
                        }
                    ],
                },
            ],
        },
        {
            "id": "details",
            "title": "Details",
            "questions": [
                {
                    "id": "cert_type",
                    "label": "Certificate type",
                    "type": "single_choice",
                    "options": ["work", "study", "carer"],
                },
                {
                    "id": "carer_name",
                    "label": "Name of the person you care for",
                    "type": "free_text",
                    "condition": {"op": "equals", "question": "cert_type", "value": "carer"},
                },
                {
                    "id": "days_off",
                    "label": "Days off",
                    "type": "numeric",
                    "validation": {"min_value": 1, "max_value": 14},
                    "flags": [
                        {
                            "id": "long_absence",
                            "operator": "gt",
                            "value": 5,
                            "severity": "warning",
                            "message": "More than five days requested",
                        }
                    ],
                },
                {
                    "id": "symptoms",
                    "label": "Symptoms",
                    "type": "multi_choice",
                    "options": ["fever", "cough", "other"],
                    "validation": {"min_selections": 1},
                },
                {
                    "id": "other_symptom",
                    "label": "Describe the other symptom",
                    "type": "free_text",
                    "condition": {"op": "includes", "question": "symptoms", "value": "other"},
                },
            ],
        },
        {
            "id": "carer_details",
            "title": "Carer details",
            "condition": {"op": "equals", "question": "cert_type", "value": "carer"},
            "questions": [
                {
                    "id": "relation",
                    "label": "Relationship",
                    "type": "single_choice",
                    "options": ["parent", "child", "partner"],
                }
            ],
        },
    ],
}

VALID_ANSWERS: dict[str, Any] = {
    "chest_pain": False,
    "cert_type": "work",
    "days_off": 2,
    "symptoms": ["fever"],
}


class FakeClock:
    """Controllable clock for claim and expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FailingAuditRepository(AuditRepository):
    """Audit repository that refuses entries for selected actions."""

    def __init__(self, session: AsyncSession, fail_on: set[AuditAction]):
        super().__init__(session)
        self.fail_on = fail_on

    async def append(self, entry: AuditEntry) -> AuditEntry:
        if entry.action in self.fail_on:
            raise AuditWriteFailure(f"audit store unavailable for {entry.action.value}")
        return await super().append(entry)


class FailingStorage:
    """Blob storage whose writes always fail."""

    async def put(self, path: str, content: bytes) -> str:
        raise StorageError(f"bucket unavailable for {path}")

    async def get(self, path: str) -> bytes:
        raise StorageError(f"bucket unavailable for {path}")


class RecordingNotifier:
    """Notifier that records messages; ``fail`` makes every send raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def send(self, recipient: str, template: str, data: dict[str, Any]) -> bool:
        if self.fail:
            raise NotificationError(f"cannot reach {recipient}")
        self.sent.append((recipient, template, data))
        return True

    def templates(self) -> list[str]:
        return [template for _, template, _ in self.sent]


class RecordingRefunds:
    """Refund gateway that records requests; ``fail`` makes every refund raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.refunded: list[str] = []

    async def refund(self, payment_reference: str, amount: int | None = None) -> bool:
        if self.fail:
            raise RefundError(f"gateway rejected {payment_reference}")
        self.refunded.append(payment_reference)
        return True


@pytest.fixture
def flow_definition() -> FlowDefinition:
    return FlowDefinition.model_validate(TEST_FLOW)


@pytest.fixture
def catalog(flow_definition: FlowDefinition) -> FlowCatalog:
    return FlowCatalog([flow_definition])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """File-backed SQLite engine so separate sessions really compete for locks."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


async def read_case(session: AsyncSession, case_id: int) -> CaseRecord:
    """Read a case and end the read transaction so other sessions can write."""
    case = await CaseRepository(session).get(case_id)
    await session.commit()
    return case


async def read_audit(session: AsyncSession, case_id: int) -> list[AuditEntry]:
    entries = list(await AuditRepository(session).for_case(case_id))
    await session.commit()
    return entries


def actions(entries: list[AuditEntry]) -> list[AuditAction]:
    return [entry.action for entry in entries]


type CaseFactory = Callable[..., Awaitable[CaseRecord]]


@pytest.fixture
def make_case(
    test_session: AsyncSession, catalog: FlowCatalog, clock: FakeClock
) -> CaseFactory:
    """Save a draft and submit it, returning the new ``paid`` case."""

    async def _make_case(
        answers: dict[str, Any] | None = None,
        patient_id: str | None = "patient-1",
        payment_reference: str | None = "pay_123",
    ) -> CaseRecord:
        session_id = uuid4().hex
        snapshot = DraftSnapshot(
            session_id=session_id,
            flow_id=TEST_FLOW["id"],
            flow_version=TEST_FLOW["version"],
            answers=answers if answers is not None else dict(VALID_ANSWERS),
            version=1,
        )
        outcome = await DraftRepository(test_session).save(snapshot)
        assert outcome.ok
        service = IntakeService(test_session, catalog, clock=clock)
        return await service.submit_flow(
            session_id, patient_id=patient_id, payment_reference=payment_reference
        )

    return _make_case


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def refunds() -> RecordingRefunds:
    return RecordingRefunds()


@pytest.fixture
def storage(tmp_path: Path) -> LocalBlobStorage:
    return LocalBlobStorage(tmp_path / "documents")


@pytest.fixture
def renderer() -> JinjaDocumentRenderer:
    return JinjaDocumentRenderer()


@pytest.fixture
def test_app(
    catalog: FlowCatalog,
    renderer: JinjaDocumentRenderer,
    storage: LocalBlobStorage,
    notifier: RecordingNotifier,
    refunds: RecordingRefunds,
    session_factory: async_sessionmaker[AsyncSession],
) -> Any:
    """Application wired to the test database and collaborator doubles."""
    app = create_app(
        catalog=catalog, renderer=renderer, storage=storage, notifier=notifier, refunds=refunds
    )

    async def override_get_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_session
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(test_app: Any) -> AsyncGenerator[Callable[..., AsyncClient]]:
    """Factory of API clients acting as a given actor."""
    clients: list[AsyncClient] = []

    def _client(actor_id: str | None = "patient-1", role: str | None = "patient") -> AsyncClient:
        headers = {}
        if actor_id is not None:
            headers["X-Actor-Id"] = actor_id
        if role is not None:
            headers["X-Actor-Role"] = role
        ac = AsyncClient(
            transport=ASGITransport(app=test_app), base_url="http://test", headers=headers
        )
        clients.append(ac)
        return ac

    yield _client

    for ac in clients:
        await ac.aclose()
