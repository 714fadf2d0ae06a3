"""Persistence helpers for trial records.

Every stage change goes through :meth:`TrialStore.transition`, a single guarded
``UPDATE ... WHERE stage = :expected`` statement. Callers receive the fresh row
whether or not the guard held so they can report the precise conflict.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from core.clock import utcnow
from core.logging import get_logger
from core.trial_constants import ACTIVE_TRIAL_STAGES, TrialStage
from models.trial import TrialRecord
from services.trial_errors import DuplicateTrialIdentity

logger = get_logger(__name__)

_UNIQUE_FIELDS = ("device_id", "external_id")


@dataclass(frozen=True)
class GuardedUpdateResult:
    """Outcome of a compare-and-swap on ``stage``."""

    applied: bool
    record: Optional[TrialRecord]


def _duplicate_field(exc: IntegrityError) -> Optional[str]:
    message = str(getattr(exc, "orig", exc))
    for field in _UNIQUE_FIELDS:
        if field in message:
            return field
    return None


class TrialStore:
    """Thin repository over ``trial_records`` bound to one request-scoped session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _fetch_one(self, *criteria: ColumnElement[bool]) -> Optional[TrialRecord]:
        stmt = select(TrialRecord).where(*criteria).execution_options(populate_existing=True)
        return self.session.execute(stmt).scalars().first()

    def get(self, trial_id: uuid.UUID) -> Optional[TrialRecord]:
        return self._fetch_one(TrialRecord.id == trial_id)

    def get_by_device(self, device_id: str) -> Optional[TrialRecord]:
        if not device_id:
            return None
        return self._fetch_one(TrialRecord.device_id == device_id)

    def get_by_external(self, external_id: str) -> Optional[TrialRecord]:
        if not external_id:
            return None
        return self._fetch_one(TrialRecord.external_id == external_id)

    def find_by_email(self, email: str) -> Optional[TrialRecord]:
        """Email is not unique; the most recently created record wins."""
        if not email:
            return None
        stmt = (
            select(TrialRecord)
            .where(TrialRecord.email == email)
            .order_by(TrialRecord.created_at.desc(), TrialRecord.started_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalars().first()

    def get_by_entitlement(self, entitlement_id: str) -> Optional[TrialRecord]:
        if not entitlement_id:
            return None
        return self._fetch_one(TrialRecord.converted_entitlement_id == entitlement_id)

    def other_holder_of_external(self, external_id: str, *, exclude_id: uuid.UUID) -> Optional[TrialRecord]:
        return self._fetch_one(TrialRecord.external_id == external_id, TrialRecord.id != exclude_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, values: Mapping[str, Any]) -> TrialRecord:
        """Insert a new record; a uniqueness violation rolls back and raises."""
        now = utcnow()
        payload: Dict[str, Any] = {"created_at": now, "updated_at": now, "flagged": False}
        payload.update(values)
        record = TrialRecord(**payload)
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            field = _duplicate_field(exc) or "device_id"
            logger.info("Trial insert lost a uniqueness race on %s.", field)
            raise DuplicateTrialIdentity(field) from exc
        return record

    def transition(
        self,
        trial_id: uuid.UUID,
        expected_stage: TrialStage,
        values: Mapping[str, Any],
        *,
        extra_guards: Iterable[ColumnElement[bool]] = (),
    ) -> GuardedUpdateResult:
        """Apply ``values`` only if the stored stage is still ``expected_stage``."""
        payload = dict(values)
        payload.setdefault("updated_at", utcnow())
        stmt = (
            update(TrialRecord)
            .where(and_(TrialRecord.id == trial_id, TrialRecord.stage == expected_stage, *extra_guards))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except IntegrityError as exc:
            self.session.rollback()
            field = _duplicate_field(exc) or "external_id"
            raise DuplicateTrialIdentity(field) from exc
        applied = (result.rowcount or 0) == 1
        if not applied:
            logger.info("Guarded update on trial %s expected stage=%s but lost the race.", trial_id, expected_stage)
        return GuardedUpdateResult(applied=applied, record=self.get(trial_id))

    def update_metadata(self, trial_id: uuid.UUID, values: Mapping[str, Any]) -> Optional[TrialRecord]:
        """Unguarded write for fields orthogonal to ``stage`` (moderation, device binding)."""
        if "stage" in values:
            raise ValueError("stage changes must go through transition()")
        payload = dict(values)
        payload.setdefault("updated_at", utcnow())
        stmt = (
            update(TrialRecord)
            .where(TrialRecord.id == trial_id)
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateTrialIdentity(_duplicate_field(exc) or "device_id") from exc
        if (result.rowcount or 0) == 0:
            return None
        return self.get(trial_id)

    def release_device(self, device_id: str, *, except_id: uuid.UUID) -> Optional[uuid.UUID]:
        """Detach ``device_id`` from another unconverted record holding it."""
        holder = self._fetch_one(
            TrialRecord.device_id == device_id,
            TrialRecord.id != except_id,
            TrialRecord.stage != TrialStage.CONVERTED,
        )
        if holder is None:
            return None
        self.session.execute(
            update(TrialRecord)
            .where(TrialRecord.id == holder.id)
            .values(device_id=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.info("Released device binding from trial %s.", holder.id)
        return holder.id

    def expire_overdue(self, now: datetime, *, limit: Optional[int] = None) -> int:
        """Persist ``expired`` for active records whose window has lapsed."""
        criteria = and_(
            TrialRecord.stage.in_(tuple(ACTIVE_TRIAL_STAGES)),
            TrialRecord.expires_at < now,
        )
        if limit is not None:
            ids = select(TrialRecord.id).where(criteria).order_by(TrialRecord.expires_at).limit(limit)
            target = and_(criteria, TrialRecord.id.in_(ids))
        else:
            target = criteria
        stmt = (
            update(TrialRecord)
            .where(target)
            .values(stage=TrialStage.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return int(result.rowcount or 0)


__all__ = ["GuardedUpdateResult", "TrialStore"]
