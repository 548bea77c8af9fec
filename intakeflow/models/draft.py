"""
Draft snapshot models.

A draft snapshot is a versioned, whole-state copy of an in-progress flow
session. The server keeps one row per session with a monotonic version.
"""

from datetime import datetime
from typing import Any, Self
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import JSON, Column, Field, SQLModel

from ..types import Answers
from .base import DraftOrigin, ensure_utc, utcnow


class DraftSnapshotBase(SQLModel):
    """Fields shared by the wire model and the stored row."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    session_id: str = Field(index=True)
    flow_id: str
    flow_version: int = 1
    step_pointer: int = 0
    answers: Answers = Field(default_factory=dict)
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
    origin: DraftOrigin = DraftOrigin.local
    submitted_at: datetime | None = None


class DraftSnapshot(DraftSnapshotBase):
    """Snapshot exchanged between a flow session, local caches and the server."""

    def same_content(self, other: DraftSnapshotBase) -> bool:
        """True when both snapshots describe the same questionnaire state."""
        return (
            self.flow_id == other.flow_id
            and self.flow_version == other.flow_version
            and self.step_pointer == other.step_pointer
            and self.answers == other.answers
        )

    def as_origin(self, origin: DraftOrigin) -> Self:
        return self.model_copy(update={"origin": origin})


class DraftRecord(DraftSnapshotBase, table=True):
    """Server-held draft row, unique per session."""

    __tablename__ = "draftsnapshot"

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    answers: Answers = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    submitted_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]

    def to_snapshot(self) -> DraftSnapshot:
        data: dict[str, Any] = self.model_dump()
        data["origin"] = DraftOrigin.server
        data["updated_at"] = ensure_utc(self.updated_at)
        data["submitted_at"] = ensure_utc(self.submitted_at)
        return DraftSnapshot.model_validate(data)


class PersistOutcome(SQLModel):
    """Result of writing a snapshot to the server copy.

    ``status`` is ``ok`` or ``conflict``; on conflict ``server`` holds the
    stored copy the caller lost against.
    """

    status: str
    snapshot: DraftSnapshot | None = None
    server: DraftSnapshot | None = None
    unchanged: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "ok"
