"""SQLAlchemy models for trial records and their audit trail."""

from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from core.trial_constants import TrialStage
from database import Base

TRIAL_STAGE_TYPE = Enum(
    TrialStage,
    name="trial_stage",
    native_enum=False,
    length=16,
    values_callable=lambda members: [member.value for member in members],
    validate_strings=True,
)


class TrialRecord(Base):
    """One row per trial identity (device fingerprint and/or external account)."""

    __tablename__ = "trial_records"
    __table_args__ = (
        UniqueConstraint("device_id", name="uq_trial_records_device_id"),
        UniqueConstraint("external_id", name="uq_trial_records_external_id"),
        Index("ix_trial_records_stage_expires_at", "stage", "expires_at"),
        {"extend_existing": True},
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    device_id = Column(String(128), nullable=True)
    external_id = Column(String(64), nullable=True)
    external_username = Column(String(255), nullable=True)
    email = Column(String(320), nullable=True, index=True)
    platform = Column(String(64), nullable=True)
    machine_id = Column(String(128), nullable=True)
    stage = Column(TRIAL_STAGE_TYPE, nullable=False, default=TrialStage.ANONYMOUS)
    started_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    extended_at = Column(DateTime(timezone=True), nullable=True)
    converted_entitlement_id = Column(String(128), nullable=True, index=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    flagged = Column(Boolean, nullable=False, default=False)
    flag_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<TrialRecord id={self.id} stage={self.stage!s}>"


class TrialAuditEvent(Base):
    """Append-only history of trial transitions and moderation actions."""

    __tablename__ = "trial_audit_events"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    trial_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("trial_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = Column(String(64), nullable=False, index=True)
    actor = Column(String(255), nullable=True)
    from_stage = Column(String(16), nullable=True)
    to_stage = Column(String(16), nullable=True)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
