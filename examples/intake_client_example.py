"""Example: a patient completes a medical certificate intake and a doctor issues it.

Start a server first (``intakeflow run``) with ``flows_path`` pointing at
``examples/flows``.
"""

import asyncio
from pathlib import Path

from intakeflow.client import IntakeAPIError, IntakeClient
from intakeflow.exceptions.domain import KnockoutError
from intakeflow.models import ActorRole, DocumentInputs
from intakeflow.services.drafts import DraftReconciler, FileDraftCache, HttpDraftRemote
from intakeflow.services.flow_session import FlowSession
from intakeflow.settings import settings


async def patient_intake(client: IntakeClient) -> int:
    """Answer the flow, save the draft and submit it."""
    definition = await client.get_flow("med_cert")
    reconciler = DraftReconciler(
        HttpDraftRemote(client), FileDraftCache(Path(settings.storage_path) / "drafts")
    )

    session = FlowSession(definition)
    session.answer("cert_type", "work")
    session.answer("duration", "2_days")
    session.answer("symptoms", ["gastro"])
    session.answer("safety_urgent", True)

    # The urgent-care answer blocks the flow until it is changed
    try:
        session.next_step()
    except KnockoutError as e:
        print(f"Blocked: {e.messages}")
    session.answer("safety_urgent", False)
    session.answer("safety_pregnant", False)

    outcome = await reconciler.save_session(session)
    print(f"Draft saved: {outcome.status if outcome else 'nothing to save'}")

    await reconciler.flush_for_submit(session)
    submitted = await client.submit(session.session_id, payment_reference="pay_demo_001")
    session.mark_submitted()
    print(f"Submitted as case {submitted.case_id} with {len(submitted.flags)} flags")
    return submitted.case_id


async def doctor_review(case_id: int) -> None:
    """Claim the case and issue the certificate."""
    async with IntakeClient(actor_id="dr-demo", role=ActorRole.doctor) as client:
        claim = await client.claim(case_id)
        if not claim.granted:
            print(f"Case {case_id} is with {claim.current_holder}")
            return

        result = await client.issue(
            case_id,
            DocumentInputs(
                patient_name="Alex Example",
                start_date="2026-03-02",
                end_date="2026-03-03",
                reviewer_name="Dr Demo",
            ),
        )
        if result.issued:
            print(
                f"Issued {result.certificate_number} "
                f"(verify with {result.verification_code}), case {result.status}"
            )
        else:
            print(f"Issuance failed ({result.failure_kind}): {result.message}")

        for entry in await client.get_audit(case_id):
            print(f"  {entry.timestamp:%H:%M:%S} {entry.actor_id}: {entry.action.value}")


async def main() -> None:
    async with IntakeClient(actor_id="patient-demo", role=ActorRole.patient) as client:
        try:
            case_id = await patient_intake(client)
        except IntakeAPIError as e:
            print(f"Submission failed: {e.message} {e.detail}")
            return
    await doctor_review(case_id)


if __name__ == "__main__":
    asyncio.run(main())
