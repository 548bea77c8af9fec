"""
Public verification of issued documents.

Employers and schools check a certificate by its verification code or its
certificate number. Responses disclose only what is printed on the document,
with the patient name masked.
"""

import re

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import DocumentVerification, IssuedDocument
from ..repositories import DocumentRepository
from ..settings import settings
from ..utils.logger import logger

CODE_PATTERN = re.compile(r"^(MC-\d{4}-[0-9A-F]{8}|[0-9A-F]{10})$")


def normalize_code(raw: str) -> str:
    return re.sub(r"[^A-Z0-9-]", "", raw.strip().upper())


def mask_name(full_name: str | None) -> str:
    """First name and last initial, e.g. ``Alex Example`` -> ``Alex E.``"""
    parts = (full_name or "").split()
    if not parts:
        return "Patient"
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]} {parts[-1][0].upper()}."


def _mask_code(code: str) -> str:
    return f"{code[:4]}****" if len(code) > 4 else "****"


class DocumentVerifier:
    """Looks up issued documents for third-party verification."""

    def __init__(self, session: AsyncSession, documents: DocumentRepository | None = None):
        self.session = session
        self.documents = documents or DocumentRepository(session)

    async def _find(self, code: str) -> IssuedDocument | None:
        if code.startswith("MC-"):
            return await self.documents.get_by_certificate_number(code)
        return await self.documents.get_by_verification_code(code)

    async def verify(self, raw_code: str) -> DocumentVerification:
        """Check a verification code or certificate number.

        Unknown and malformed codes give ``valid=False`` without saying why.
        """
        code = normalize_code(raw_code)
        if not CODE_PATTERN.match(code):
            logger.info(f"Verification rejected: malformed code {_mask_code(code)}")
            return DocumentVerification(valid=False)

        try:
            document = await self._find(code)
        finally:
            await self.session.commit()

        if document is None:
            logger.info(f"Verification failed for {_mask_code(code)}")
            return DocumentVerification(valid=False)

        inputs = document.template_snapshot.get("inputs", {})
        logger.info(f"Document {document.certificate_number} verified")
        return DocumentVerification(
            valid=True,
            certificate_number=document.certificate_number,
            issued_at=document.issued_at,
            valid_from=inputs.get("start_date"),
            valid_to=inputs.get("end_date"),
            patient_name=mask_name(document.identity_snapshot.get("patient_name")),
            issued_by=document.identity_snapshot.get("reviewer_name"),
            clinic_name=settings.clinic_name,
        )
