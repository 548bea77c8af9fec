"""Repository layer for data access operations."""

from .audit_repository import AuditRepository
from .base import BaseRepository
from .case_repository import CaseRepository, CaseSearchCriteria
from .document_repository import DocumentRepository
from .draft_repository import DraftRepository

__all__ = [
    "AuditRepository",
    "BaseRepository",
    "CaseRepository",
    "CaseSearchCriteria",
    "DocumentRepository",
    "DraftRepository",
]
