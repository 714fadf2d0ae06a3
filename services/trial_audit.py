"""Append-only audit trail for trial transitions and moderation actions."""

from __future__ import annotations

import uuid
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.clock import utcnow
from core.logging import get_logger
from core.trial_constants import TrialStage
from models.trial import TrialAuditEvent

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


def _stage_value(stage: Optional[TrialStage | str]) -> Optional[str]:
    if stage is None:
        return None
    return stage.value if isinstance(stage, TrialStage) else str(stage)


def record_trial_event(
    session: Session,
    *,
    trial_id: uuid.UUID,
    action: str,
    actor: Optional[str] = None,
    from_stage: Optional[TrialStage | str] = None,
    to_stage: Optional[TrialStage | str] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> TrialAuditEvent:
    """Stage an audit row in the caller's transaction; the caller commits."""
    event = TrialAuditEvent(
        trial_id=trial_id,
        action=action,
        actor=actor or SYSTEM_ACTOR,
        from_stage=_stage_value(from_stage),
        to_stage=_stage_value(to_stage),
        context=dict(context) if context else None,
        created_at=utcnow(),
    )
    session.add(event)
    logger.debug("Audit trial=%s action=%s actor=%s", trial_id, action, event.actor)
    return event


def list_trial_events(session: Session, trial_id: uuid.UUID, *, limit: int = 100) -> list[TrialAuditEvent]:
    stmt = (
        select(TrialAuditEvent)
        .where(TrialAuditEvent.trial_id == trial_id)
        .order_by(TrialAuditEvent.created_at.asc())
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


__all__ = ["SYSTEM_ACTOR", "list_trial_events", "record_trial_event"]
