"""
Document verification router.

Public endpoint used by employers and schools to check an issued
certificate. It takes no actor headers.
"""

from fastapi import APIRouter

from intakeflow.api.dependencies import VerifierDep
from intakeflow.models import DocumentVerification

router = APIRouter(tags=["Documents"])


@router.get("/verify/{code}", response_model=DocumentVerification)
async def verify_document(code: str, verifier: VerifierDep) -> DocumentVerification:
    """Verify a document by verification code or certificate number."""
    return await verifier.verify(code)
