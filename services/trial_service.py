"""Trial lifecycle: creation, extension, reactivation, expiry and moderation.

All stage changes funnel through :meth:`TrialLifecycleService._apply`, which
reads the record, asks a decision callback for the legal transition and writes
it as a guarded update. A lost guard is re-evaluated once against the fresh
row before surfacing :class:`ConflictingTransitionError`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from core.clock import as_utc, ceil_days, utcnow
from core.logging import get_logger, mask_identifier
from core.trial_constants import (
    ANONYMOUS_WINDOW,
    EXPIRING_SOON_DAYS,
    EXTENSION_WINDOW,
    REACTIVATION_COOLDOWN,
    TrialStage,
)
from models.trial import TrialRecord
from services.trial_audit import record_trial_event
from services.trial_errors import (
    AlreadyConvertedError,
    AlreadyExtendedError,
    ConflictingTransitionError,
    CooldownActiveError,
    DuplicateTrialIdentity,
    ExternalIdentityReusedError,
    TrialExpiredError,
    TrialNotExpiredError,
    TrialNotFoundError,
    TrialServiceError,
)
from services.trial_metrics import record_transition
from services.trial_store import TrialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    """Identity proven through the OAuth exchange (GitHub user id, login, email)."""

    external_id: str
    username: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class TrialStatus:
    """Read-side view derived from ``(stored stage, expires_at, now)``."""

    trial_id: uuid.UUID
    stage: TrialStage
    stored_stage: TrialStage
    days_remaining: int
    is_expired: bool
    can_extend: bool
    is_expiring_soon: bool
    expires_at: Optional[datetime]
    started_at: Optional[datetime]
    external_username: Optional[str] = None
    flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trialId": str(self.trial_id),
            "stage": self.stage.value,
            "daysRemaining": self.days_remaining,
            "isExpired": self.is_expired,
            "canExtend": self.can_extend,
            "isExpiringSoon": self.is_expiring_soon,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "githubUsername": self.external_username,
            "flagged": self.flagged,
        }


@dataclass(frozen=True)
class _Transition:
    expected: TrialStage
    to_stage: TrialStage
    values: Mapping[str, Any]
    action: str
    guards: Tuple[ColumnElement[bool], ...] = ()
    context: Mapping[str, Any] = field(default_factory=dict)


_Decision = Union[_Transition, TrialRecord]


def is_effectively_expired(record: TrialRecord, *, now: Optional[datetime] = None) -> bool:
    """Stored ``stage`` is a cache; the expiry timestamp decides."""
    if record.stage == TrialStage.CONVERTED:
        return False
    if record.stage == TrialStage.EXPIRED:
        return True
    reference = now or utcnow()
    expires_at = as_utc(record.expires_at)
    return expires_at is None or reference > expires_at


def effective_stage(record: TrialRecord, *, now: Optional[datetime] = None) -> TrialStage:
    if is_effectively_expired(record, now=now):
        return TrialStage.EXPIRED
    return TrialStage(record.stage)


def days_remaining(expires_at: Optional[datetime], *, now: Optional[datetime] = None) -> int:
    if expires_at is None:
        return 0
    return ceil_days(as_utc(expires_at) - (now or utcnow()))


def compute_status(record: TrialRecord, *, now: Optional[datetime] = None) -> TrialStatus:
    """Pure status derivation used for every access decision."""
    reference = now or utcnow()
    stage = effective_stage(record, now=reference)
    expired = stage == TrialStage.EXPIRED
    remaining = 0 if expired or stage == TrialStage.CONVERTED else days_remaining(record.expires_at, now=reference)
    return TrialStatus(
        trial_id=record.id,
        stage=stage,
        stored_stage=TrialStage(record.stage),
        days_remaining=remaining,
        is_expired=expired,
        can_extend=stage == TrialStage.ANONYMOUS and not record.external_id,
        is_expiring_soon=0 < remaining <= EXPIRING_SOON_DAYS,
        expires_at=as_utc(record.expires_at),
        started_at=as_utc(record.started_at),
        external_username=record.external_username,
        flagged=bool(record.flagged),
    )


def reactivation_days_remaining(record: TrialRecord, *, now: Optional[datetime] = None) -> int:
    """Days until an expired trial may be reactivated (0 when eligible)."""
    expires_at = as_utc(record.expires_at) or (now or utcnow())
    eligible_at = expires_at + REACTIVATION_COOLDOWN
    return ceil_days(eligible_at - (now or utcnow()))


class TrialLifecycleService:
    """Single owner of trial state-machine transitions."""

    def __init__(self, session: Session, *, store: Optional[TrialStore] = None) -> None:
        self.session = session
        self.store = store or TrialStore(session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        device_id: str,
        *,
        platform: Optional[str] = None,
        machine_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        """Start an anonymous trial for ``device_id`` or return the device's existing record."""
        if not device_id or not device_id.strip():
            raise ValueError("device_id is required")
        device_id = device_id.strip()
        now = now or utcnow()

        existing = self.store.get_by_device(device_id)
        if existing is not None:
            logger.info(
                "Trial already exists for device=%s trial=%s stage=%s.",
                mask_identifier(device_id),
                existing.id,
                existing.stage,
            )
            record_transition("create", "existing")
            return existing

        try:
            record = self.store.insert(
                {
                    "device_id": device_id,
                    "platform": platform,
                    "machine_id": machine_id,
                    "stage": TrialStage.ANONYMOUS,
                    "started_at": now,
                    "expires_at": now + ANONYMOUS_WINDOW,
                }
            )
        except DuplicateTrialIdentity:
            winner = self.store.get_by_device(device_id)
            if winner is None:
                record_transition("create", "conflict")
                raise ConflictingTransitionError()
            record_transition("create", "existing")
            return winner

        record_trial_event(
            self.session,
            trial_id=record.id,
            action="trial.created",
            to_stage=TrialStage.ANONYMOUS,
            context={"platform": platform} if platform else None,
        )
        self.session.commit()
        record_transition("create", "created")
        logger.info("Started anonymous trial %s for device=%s.", record.id, mask_identifier(device_id))
        return record

    def start_linked(self, device_id: str, identity: ExternalIdentity, *, now: Optional[datetime] = None) -> TrialRecord:
        """Insert an anonymous trial already bound to ``identity``.

        Raises :class:`DuplicateTrialIdentity` so the caller can re-read the winner.
        """
        now = now or utcnow()
        record = self.store.insert(
            {
                "device_id": device_id,
                "external_id": identity.external_id,
                "external_username": identity.username,
                "email": identity.email,
                "stage": TrialStage.ANONYMOUS,
                "started_at": now,
                "expires_at": now + ANONYMOUS_WINDOW,
            }
        )
        record_trial_event(
            self.session,
            trial_id=record.id,
            action="trial.started_linked",
            to_stage=TrialStage.ANONYMOUS,
            context={"externalUsername": identity.username},
        )
        self.session.commit()
        record_transition("start_linked", "created")
        logger.info("Started linked trial %s for github=%s.", record.id, identity.username)
        return record

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def extend(
        self,
        trial_id: uuid.UUID,
        external_id: str,
        username: Optional[str],
        email: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        """Bind an external identity and restart the window (reset, not additive)."""
        now = now or utcnow()

        def decide(record: TrialRecord) -> _Decision:
            if record.stage == TrialStage.CONVERTED:
                raise AlreadyConvertedError()
            if record.stage == TrialStage.EXTENDED:
                raise AlreadyExtendedError()
            if is_effectively_expired(record, now=now):
                raise TrialExpiredError()
            if record.external_id:
                # identity already bound (trial started through GitHub); the one extension is spent
                raise AlreadyExtendedError()
            if self.store.other_holder_of_external(external_id, exclude_id=record.id) is not None:
                raise ExternalIdentityReusedError()
            return _Transition(
                expected=TrialStage.ANONYMOUS,
                to_stage=TrialStage.EXTENDED,
                values={
                    "external_id": external_id,
                    "external_username": username,
                    "email": email,
                    "stage": TrialStage.EXTENDED,
                    "extended_at": now,
                    "expires_at": now + EXTENSION_WINDOW,
                },
                guards=(TrialRecord.external_id.is_(None),),
                action="trial.extended",
                context={"externalUsername": username},
            )

        return self._apply(trial_id, "extend", decide)

    def reactivate(
        self,
        device_id: str,
        external_id: str,
        username: Optional[str],
        email: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        """Reset the expired trial owned by ``external_id`` once the cooldown has passed."""
        record = self.store.get_by_external(external_id)
        if record is None:
            record_transition("reactivate", TrialNotFoundError.code)
            raise TrialNotFoundError()
        identity = ExternalIdentity(external_id=external_id, username=username, email=email)
        return self.reactivate_record(record.id, device_id, identity, now=now)

    def reactivate_record(
        self,
        trial_id: uuid.UUID,
        device_id: Optional[str],
        identity: Optional[ExternalIdentity],
        *,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        now = now or utcnow()

        def decide(record: TrialRecord) -> _Decision:
            if record.stage == TrialStage.CONVERTED:
                raise AlreadyConvertedError()
            if not is_effectively_expired(record, now=now):
                raise TrialNotExpiredError()
            wait_days = reactivation_days_remaining(record, now=now)
            if wait_days > 0:
                raise CooldownActiveError(wait_days)
            values: Dict[str, Any] = {
                "stage": TrialStage.ANONYMOUS,
                "started_at": now,
                "expires_at": now + ANONYMOUS_WINDOW,
                "extended_at": None,
            }
            if device_id:
                self._claim_device(device_id, record)
                values["device_id"] = device_id
            if identity is not None:
                values["external_id"] = identity.external_id
                if identity.username:
                    values["external_username"] = identity.username
                if identity.email:
                    values["email"] = identity.email
            return _Transition(
                expected=TrialStage(record.stage),
                to_stage=TrialStage.ANONYMOUS,
                values=values,
                guards=(TrialRecord.expires_at == record.expires_at,),
                action="trial.reactivated",
                context={"previousExpiresAt": as_utc(record.expires_at).isoformat()},
            )

        return self._apply(trial_id, "reactivate", decide)

    def bind_identity(
        self,
        trial_id: uuid.UUID,
        identity: ExternalIdentity,
        *,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        """Link an identity to an active unlinked anonymous trial without touching its window."""
        now = now or utcnow()

        def decide(record: TrialRecord) -> _Decision:
            if record.stage == TrialStage.CONVERTED:
                raise AlreadyConvertedError()
            if is_effectively_expired(record, now=now):
                raise TrialExpiredError()
            if record.stage == TrialStage.EXTENDED or record.external_id:
                raise AlreadyExtendedError()
            return _Transition(
                expected=TrialStage.ANONYMOUS,
                to_stage=TrialStage.ANONYMOUS,
                values={
                    "external_id": identity.external_id,
                    "external_username": identity.username,
                    "email": identity.email,
                },
                guards=(TrialRecord.external_id.is_(None),),
                action="trial.identity_linked",
                context={"externalUsername": identity.username},
            )

        return self._apply(trial_id, "bind_identity", decide)

    def rebind_device(self, trial_id: uuid.UUID, device_id: str, *, now: Optional[datetime] = None) -> TrialRecord:
        """Move ``device_id`` onto an active trial (multi-device continuity)."""
        now = now or utcnow()

        def decide(record: TrialRecord) -> _Decision:
            if record.stage == TrialStage.CONVERTED:
                raise AlreadyConvertedError()
            if is_effectively_expired(record, now=now):
                raise TrialExpiredError()
            if record.device_id == device_id:
                return record
            self._claim_device(device_id, record)
            stage = TrialStage(record.stage)
            return _Transition(
                expected=stage,
                to_stage=stage,
                values={"device_id": device_id},
                guards=(TrialRecord.expires_at == record.expires_at,),
                action="trial.device_rebound",
                context={"device": mask_identifier(device_id)},
            )

        return self._apply(trial_id, "rebind_device", decide)

    def force_expire(
        self,
        trial_id: uuid.UUID,
        *,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        """Admin-only expiry; idempotent on an already-expired record, rejected on converted."""
        now = now or utcnow()

        def decide(record: TrialRecord) -> _Decision:
            if record.stage == TrialStage.CONVERTED:
                raise AlreadyConvertedError()
            if record.stage == TrialStage.EXPIRED:
                return record
            return _Transition(
                expected=TrialStage(record.stage),
                to_stage=TrialStage.EXPIRED,
                values={"stage": TrialStage.EXPIRED, "expires_at": now},
                action="trial.force_expired",
            )

        return self._apply(trial_id, "force_expire", decide, actor=actor)

    def convert(
        self,
        trial_id: uuid.UUID,
        entitlement_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> TrialRecord:
        """Terminal transition to ``converted``; an already-converted record is returned unchanged."""
        now = now or utcnow()

        def decide(record: TrialRecord) -> _Decision:
            if record.stage == TrialStage.CONVERTED:
                if record.converted_entitlement_id != entitlement_id:
                    logger.warning(
                        "Trial %s already converted to entitlement=%s; ignoring entitlement=%s.",
                        record.id,
                        record.converted_entitlement_id,
                        entitlement_id,
                    )
                return record
            return _Transition(
                expected=TrialStage(record.stage),
                to_stage=TrialStage.CONVERTED,
                values={
                    "stage": TrialStage.CONVERTED,
                    "converted_entitlement_id": entitlement_id,
                    "converted_at": now,
                },
                guards=(TrialRecord.converted_entitlement_id.is_(None),),
                action="trial.converted",
                context={"entitlementId": entitlement_id},
            )

        return self._apply(trial_id, "convert", decide, actor="billing")

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    def flag(self, trial_id: uuid.UUID, reason: str, *, actor: Optional[str] = None) -> TrialRecord:
        return self._moderate(
            trial_id,
            {"flagged": True, "flag_reason": reason},
            action="trial.flagged",
            actor=actor,
            context={"reason": reason},
        )

    def unflag(self, trial_id: uuid.UUID, *, actor: Optional[str] = None) -> TrialRecord:
        return self._moderate(trial_id, {"flagged": False, "flag_reason": None}, action="trial.unflagged", actor=actor)

    def _moderate(
        self,
        trial_id: uuid.UUID,
        values: Mapping[str, Any],
        *,
        action: str,
        actor: Optional[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> TrialRecord:
        record = self.store.update_metadata(trial_id, values)
        if record is None:
            self.session.rollback()
            record_transition(action, TrialNotFoundError.code)
            raise TrialNotFoundError()
        record_trial_event(self.session, trial_id=record.id, action=action, actor=actor, context=context)
        self.session.commit()
        record_transition(action, "applied")
        logger.info("Moderation %s applied to trial %s by %s.", action, trial_id, actor or "system")
        return record

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def expire_overdue(self, *, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
        """Persist ``expired`` for lapsed trials; reads never depend on this having run."""
        now = now or utcnow()
        count = self.store.expire_overdue(now, limit=limit)
        self.session.commit()
        if count:
            record_transition("expire_overdue", "applied")
            logger.info("Reconciled %d lapsed trials to expired.", count)
        return count

    def _claim_device(self, device_id: str, record: TrialRecord) -> None:
        """Detach ``device_id`` from any other active or expired record; a paid one keeps it."""
        holder = self.store.get_by_device(device_id)
        if holder is not None and holder.id != record.id and holder.stage == TrialStage.CONVERTED:
            logger.info("Device=%s belongs to converted trial %s; refusing to move it.", mask_identifier(device_id), holder.id)
            raise AlreadyConvertedError()
        self.store.release_device(device_id, except_id=record.id)

    # ------------------------------------------------------------------
    # Guarded write loop
    # ------------------------------------------------------------------

    def _apply(
        self,
        trial_id: uuid.UUID,
        operation: str,
        decide: Callable[[TrialRecord], _Decision],
        *,
        actor: Optional[str] = None,
    ) -> TrialRecord:
        record = self.store.get(trial_id)
        if record is None:
            record_transition(operation, TrialNotFoundError.code)
            raise TrialNotFoundError()

        for attempt in range(2):
            try:
                decision = decide(record)
            except TrialServiceError as exc:
                self.session.rollback()
                record_transition(operation, exc.code)
                logger.info("Trial %s %s rejected: %s", trial_id, operation, exc.code)
                raise
            if isinstance(decision, TrialRecord):
                self.session.commit()
                record_transition(operation, "noop")
                return decision

            from_stage = TrialStage(record.stage)
            try:
                result = self.store.transition(
                    record.id,
                    decision.expected,
                    decision.values,
                    extra_guards=decision.guards,
                )
            except DuplicateTrialIdentity as exc:
                record_transition(operation, "duplicate_identity")
                if exc.field == "external_id":
                    raise ExternalIdentityReusedError() from exc
                raise ConflictingTransitionError() from exc

            if result.applied and result.record is not None:
                record_trial_event(
                    self.session,
                    trial_id=record.id,
                    action=decision.action,
                    actor=actor,
                    from_stage=from_stage,
                    to_stage=decision.to_stage,
                    context=decision.context,
                )
                self.session.commit()
                record_transition(operation, "applied")
                logger.info(
                    "Trial %s %s: %s -> %s (expires_at=%s).",
                    record.id,
                    operation,
                    from_stage.value,
                    decision.to_stage.value,
                    as_utc(result.record.expires_at),
                )
                return result.record

            if result.record is None:
                self.session.rollback()
                record_transition(operation, TrialNotFoundError.code)
                raise TrialNotFoundError()
            logger.info("Trial %s %s guard lost on attempt %d; re-evaluating.", trial_id, operation, attempt + 1)
            record = result.record

        self.session.rollback()
        record_transition(operation, ConflictingTransitionError.code)
        raise ConflictingTransitionError()


__all__ = [
    "ExternalIdentity",
    "TrialLifecycleService",
    "TrialStatus",
    "compute_status",
    "days_remaining",
    "effective_stage",
    "is_effectively_expired",
    "reactivation_days_remaining",
]
