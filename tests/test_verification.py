"""Tests for public document verification."""

import pytest
import pytest_asyncio

from intakeflow.models import DocumentInputs
from intakeflow.services.claims import ClaimManager
from intakeflow.services.issuance import IssuanceCoordinator
from intakeflow.services.verification import DocumentVerifier, mask_name, normalize_code
from intakeflow.settings import settings
from tests.conftest import VALID_ANSWERS

INPUTS = DocumentInputs(
    patient_name="Alex Example",
    start_date="2026-03-02",
    end_date="2026-03-03",
    reviewer_name="Dr A",
)


@pytest_asyncio.fixture
async def issued(make_case, test_session, renderer, storage, notifier, clock):
    case = await make_case()
    assert (await ClaimManager(test_session, clock=clock).claim(case.id, "dr-a")).granted
    coordinator = IssuanceCoordinator(
        test_session, renderer, storage, notifier, ttl_minutes=30, clock=clock
    )
    result = await coordinator.issue(case.id, "dr-a", INPUTS)
    assert result.issued
    return result


class TestHelpers:
    """Tests for code and name helpers."""

    @pytest.mark.parametrize(
        ("full_name", "expected"),
        [
            ("Alex Example", "Alex E."),
            ("Alex Middle example", "Alex E."),
            ("Alex", "Alex"),
            ("", "Patient"),
            (None, "Patient"),
        ],
    )
    def test_mask_name(self, full_name, expected):
        assert mask_name(full_name) == expected

    def test_normalize_code(self):
        assert normalize_code("  mc-2026-ab12cd34 ") == "MC-2026-AB12CD34"
        assert normalize_code("ab12 cd34 ef") == "AB12CD34EF"


class TestDocumentVerifier:
    """Tests for DocumentVerifier.verify."""

    @pytest.mark.asyncio
    async def test_by_verification_code(self, issued, test_session):
        result = await DocumentVerifier(test_session).verify(issued.verification_code)

        assert result.valid
        assert result.certificate_number == issued.certificate_number
        assert result.patient_name == "Alex E."
        assert result.issued_by == "Dr A"
        assert result.valid_from == "2026-03-02"
        assert result.valid_to == "2026-03-03"
        assert result.clinic_name == settings.clinic_name

    @pytest.mark.asyncio
    async def test_by_certificate_number_any_case(self, issued, test_session):
        result = await DocumentVerifier(test_session).verify(issued.certificate_number.lower())
        assert result.valid
        assert result.certificate_number == issued.certificate_number

    @pytest.mark.asyncio
    async def test_unknown_code(self, issued, test_session):
        unknown = "0000000000" if issued.verification_code != "0000000000" else "1111111111"
        result = await DocumentVerifier(test_session).verify(unknown)
        assert result.valid is False
        assert result.certificate_number is None
        assert result.patient_name is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["", "abc", "MC-26-XYZ", "ZZZZZZZZZZ"])
    async def test_malformed_code(self, test_session, code):
        result = await DocumentVerifier(test_session).verify(code)
        assert result.valid is False


class TestVerifyApi:
    """Tests for /api/documents/verify."""

    @pytest.mark.asyncio
    async def test_public_lookup_without_actor(self, client):
        patient = client()
        doctor = client("dr-a", "doctor")
        session_id = "verify-api-session"
        await patient.post(
            "/api/drafts",
            json={
                "session_id": session_id,
                "flow_id": "med_cert_test",
                "flow_version": 1,
                "answers": VALID_ANSWERS,
                "version": 1,
            },
        )
        submitted = await patient.post(f"/api/intake/{session_id}/submit", json={})
        case_id = submitted.json()["case_id"]
        await doctor.post(f"/api/cases/{case_id}/claim")
        issued = await doctor.post(
            f"/api/cases/{case_id}/issue", json={"patient_name": "Sam Sample"}
        )
        code = issued.json()["verification_code"]

        response = await client(None, None).get(f"/api/documents/verify/{code}")
        assert response.status_code == 200
        assert response.json()["valid"]
        assert response.json()["patient_name"] == "Sam S."

    @pytest.mark.asyncio
    async def test_unknown_code_is_not_an_error(self, client):
        response = await client(None, None).get("/api/documents/verify/MC-2026-00000000")
        assert response.status_code == 200
        assert response.json() == {
            "valid": False,
            "certificate_number": None,
            "issued_at": None,
            "valid_from": None,
            "valid_to": None,
            "patient_name": None,
            "issued_by": None,
            "clinic_name": None,
        }
