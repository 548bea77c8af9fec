"""
Intakeflow API Client.

This module provides a Python client for the Intakeflow HTTP API, used by
patient-facing front ends (drafts and submission) and reviewer tools
(claims and decisions).
"""

from typing import Any, Self

import httpx

from intakeflow.exceptions.domain import AlreadySubmittedError
from intakeflow.models import (
    ActorRole,
    AuditEntryRead,
    CaseRead,
    ClaimResult,
    DeclineResult,
    DocumentInputs,
    DocumentVerification,
    DraftSnapshot,
    EvaluateResponse,
    FlowDefinition,
    FlowSummary,
    IssuanceResult,
    PersistOutcome,
    ReleaseResult,
    SubmitResponse,
)
from intakeflow.settings import settings
from intakeflow.types import Answers
from intakeflow.utils.logger import logger


class IntakeAPIError(Exception):
    """Base exception for Intakeflow API errors."""

    def __init__(self, message: str, status_code: int | None = None, detail: Any = None) -> None:
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class IntakeAuthError(IntakeAPIError):
    """Missing or rejected actor identity."""

    pass


class IntakeClient:
    """Client for interacting with the Intakeflow API.

    Example:
        ```python
        async with IntakeClient("http://localhost:8000/api", "dr-lee", ActorRole.doctor) as client:
            result = await client.claim(42)
            if result.granted:
                await client.issue(42, DocumentInputs(start_date="2026-01-05"))
        ```
    """

    def __init__(
        self,
        base_url: str | None = None,
        actor_id: str = "anonymous",
        role: ActorRole = ActorRole.patient,
        timeout: float | None = None,
        log_requests: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the API, including the ``/api`` prefix
            actor_id: Identity sent in ``X-Actor-Id``
            role: Role sent in ``X-Actor-Role``
            timeout: Request timeout in seconds
            log_requests: Enable request/response logging
            transport: Custom transport, e.g. ``httpx.ASGITransport`` in tests
        """
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.actor_id = actor_id
        self.role = role
        self.log_requests = log_requests
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Actor-Id": actor_id, "X-Actor-Role": role.value},
            timeout=timeout if timeout is not None else settings.api_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        allow_status: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Make HTTP request to API.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint relative to the base URL (e.g., "/cases/1")
            allow_status: Error statuses returned to the caller instead of raised
            **kwargs: Additional arguments passed to httpx request

        Returns:
            HTTP response

        Raises:
            IntakeAPIError: On API errors and transport failures
            IntakeAuthError: On 401 and 403 responses
        """
        if self.log_requests:
            logger.debug(f"API Request: {method} {endpoint}")
        try:
            response = await self.client.request(method, endpoint, **kwargs)
        except httpx.HTTPError as e:
            raise IntakeAPIError(f"Request to {endpoint} failed: {e}") from e
        if self.log_requests:
            logger.debug(f"API Response: {response.status_code}")

        if response.status_code < 400 or response.status_code in allow_status:
            return response

        try:
            detail = response.json()
        except ValueError:
            detail = response.text
        if response.status_code in (401, 403):
            raise IntakeAuthError(
                "Actor identity missing or not allowed",
                status_code=response.status_code,
                detail=detail,
            )
        raise IntakeAPIError(
            f"API error: {response.status_code}",
            status_code=response.status_code,
            detail=detail,
        )

    # Flows

    async def list_flows(self) -> list[FlowSummary]:
        response = await self._request("GET", "/flows")
        return [FlowSummary.model_validate(item) for item in response.json()]

    async def get_flow(self, flow_id: str, version: int | None = None) -> FlowDefinition:
        params = {"version": version} if version is not None else None
        response = await self._request("GET", f"/flows/{flow_id}", params=params)
        return FlowDefinition.model_validate(response.json())

    async def evaluate(
        self, flow_id: str, answers: Answers, version: int | None = None
    ) -> EvaluateResponse:
        response = await self._request(
            "POST", f"/flows/{flow_id}/evaluate", json={"answers": answers, "version": version}
        )
        return EvaluateResponse.model_validate(response.json())

    # Drafts

    async def save_draft(self, snapshot: DraftSnapshot) -> PersistOutcome:
        """Persist a draft snapshot.

        Raises:
            AlreadySubmittedError: If the session was submitted
            IntakeAPIError: On other API errors
        """
        response = await self._request(
            "POST", "/drafts", json=snapshot.model_dump(mode="json"), allow_status=(409,)
        )
        if response.status_code == 409:
            raise AlreadySubmittedError(snapshot.session_id)
        return PersistOutcome.model_validate(response.json())

    async def get_draft(self, session_id: str) -> DraftSnapshot | None:
        """Get the server copy of a draft, or None if there is none."""
        response = await self._request("GET", f"/drafts/{session_id}", allow_status=(404,))
        if response.status_code == 404:
            return None
        return DraftSnapshot.model_validate(response.json())

    async def submit(
        self, session_id: str, payment_reference: str | None = None
    ) -> SubmitResponse:
        """Submit a session. Knockouts and validation failures raise with a 422 detail."""
        response = await self._request(
            "POST",
            f"/intake/{session_id}/submit",
            json={"payment_reference": payment_reference},
        )
        return SubmitResponse.model_validate(response.json())

    # Cases

    async def get_case(self, case_id: int) -> CaseRead:
        response = await self._request("GET", f"/cases/{case_id}")
        return CaseRead.model_validate(response.json())

    async def list_cases(self, **filters: Any) -> list[CaseRead]:
        params = {key: value for key, value in filters.items() if value is not None}
        response = await self._request("GET", "/cases", params=params)
        return [CaseRead.model_validate(item) for item in response.json()]

    async def get_audit(self, case_id: int) -> list[AuditEntryRead]:
        response = await self._request("GET", f"/cases/{case_id}/audit")
        return [AuditEntryRead.model_validate(item) for item in response.json()]

    async def claim(self, case_id: int, force: bool = False) -> ClaimResult:
        response = await self._request("POST", f"/cases/{case_id}/claim", json={"force": force})
        return ClaimResult.model_validate(response.json())

    async def release(self, case_id: int) -> ReleaseResult:
        response = await self._request("POST", f"/cases/{case_id}/release")
        return ReleaseResult.model_validate(response.json())

    async def issue(self, case_id: int, inputs: DocumentInputs | None = None) -> IssuanceResult:
        body = inputs.model_dump(mode="json") if inputs else None
        response = await self._request("POST", f"/cases/{case_id}/issue", json=body)
        return IssuanceResult.model_validate(response.json())

    async def retry_notification(self, case_id: int) -> IssuanceResult:
        response = await self._request("POST", f"/cases/{case_id}/notify")
        return IssuanceResult.model_validate(response.json())

    async def decline(
        self, case_id: int, reason: str, reason_code: str | None = None
    ) -> DeclineResult:
        response = await self._request(
            "POST",
            f"/cases/{case_id}/decline",
            json={"reason": reason, "reason_code": reason_code},
        )
        return DeclineResult.model_validate(response.json())

    async def request_info(self, case_id: int, note: str) -> CaseRead:
        response = await self._request(
            "POST", f"/cases/{case_id}/request-info", json={"note": note}
        )
        return CaseRead.model_validate(response.json())

    async def provide_info(self, case_id: int, answers: Answers) -> CaseRead:
        response = await self._request(
            "POST", f"/cases/{case_id}/provide-info", json={"answers": answers}
        )
        return CaseRead.model_validate(response.json())

    async def escalate(self, case_id: int, note: str) -> CaseRead:
        response = await self._request("POST", f"/cases/{case_id}/escalate", json={"note": note})
        return CaseRead.model_validate(response.json())

    async def cancel(self, case_id: int, reason: str | None = None) -> CaseRead:
        response = await self._request("POST", f"/cases/{case_id}/cancel", json={"reason": reason})
        return CaseRead.model_validate(response.json())

    async def verify_document(self, code: str) -> DocumentVerification:
        response = await self._request("GET", f"/documents/verify/{code}")
        return DocumentVerification.model_validate(response.json())
