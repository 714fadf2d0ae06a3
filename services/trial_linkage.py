"""Resolve a GitHub OAuth callback into a trial transition.

The identity exchange completes before the store is touched, so a slow or
failing GitHub call never leaves a half-applied change behind.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from core.clock import utcnow
from core.logging import get_logger, mask_identifier
from core.trial_constants import TrialStage
from models.trial import TrialRecord
from services.auth.github_identity import GithubIdentityClient
from services.trial_callback_state import TrialStartIntent, decode_callback_state
from services.trial_errors import (
    AlreadyConvertedError,
    ConflictingTransitionError,
    DeviceLinkedElsewhereError,
    DuplicateTrialIdentity,
    ExternalIdentityReusedError,
    TrialNotFoundError,
)
from services.trial_service import ExternalIdentity, TrialLifecycleService, is_effectively_expired

logger = get_logger(__name__)

ACTION_STARTED = "started"
ACTION_LINKED = "linked"
ACTION_REBOUND = "rebound"
ACTION_REACTIVATED = "reactivated"
ACTION_EXTENDED = "extended"


@dataclass(frozen=True)
class LinkageOutcome:
    action: str
    record: TrialRecord
    identity: ExternalIdentity


async def handle_callback(
    session: Session,
    *,
    code: str,
    state: str,
    identity_client: GithubIdentityClient,
    now: Optional[datetime] = None,
) -> LinkageOutcome:
    intent = decode_callback_state(state)
    identity = await identity_client.resolve_identity(code)
    service = TrialLifecycleService(session)
    reference = now or utcnow()

    if isinstance(intent, TrialStartIntent):
        return _link_trial_start(service, intent.device_id, identity, now=reference)
    return _link_trial_extend(service, intent.trial_id, identity, now=reference)


def _link_trial_start(
    service: TrialLifecycleService,
    device_id: str,
    identity: ExternalIdentity,
    *,
    now: datetime,
) -> LinkageOutcome:
    for _ in range(2):
        try:
            return _resolve_trial_start(service, device_id, identity, now=now)
        except DuplicateTrialIdentity as exc:
            logger.info("Trial start for device=%s lost an insert race on %s; re-reading.", mask_identifier(device_id), exc.field)
    raise ConflictingTransitionError()


def _resolve_trial_start(
    service: TrialLifecycleService,
    device_id: str,
    identity: ExternalIdentity,
    *,
    now: datetime,
) -> LinkageOutcome:
    store = service.store
    owned = store.get_by_external(identity.external_id)
    if owned is not None:
        if owned.stage == TrialStage.CONVERTED:
            raise AlreadyConvertedError()
        if is_effectively_expired(owned, now=now):
            record = service.reactivate_record(owned.id, device_id, identity, now=now)
            return LinkageOutcome(ACTION_REACTIVATED, record, identity)
        record = service.rebind_device(owned.id, device_id, now=now)
        return LinkageOutcome(ACTION_REBOUND, record, identity)

    device_record = store.get_by_device(device_id)
    if device_record is None:
        record = service.start_linked(device_id, identity, now=now)
        return LinkageOutcome(ACTION_STARTED, record, identity)
    if device_record.stage == TrialStage.CONVERTED:
        raise AlreadyConvertedError()
    if device_record.external_id:
        logger.info(
            "Device=%s already linked to another GitHub account on trial %s.",
            mask_identifier(device_id),
            device_record.id,
        )
        raise DeviceLinkedElsewhereError()
    if is_effectively_expired(device_record, now=now):
        record = service.reactivate_record(device_record.id, None, identity, now=now)
        return LinkageOutcome(ACTION_REACTIVATED, record, identity)
    record = service.bind_identity(device_record.id, identity, now=now)
    return LinkageOutcome(ACTION_LINKED, record, identity)


def _link_trial_extend(
    service: TrialLifecycleService,
    trial_id: uuid.UUID,
    identity: ExternalIdentity,
    *,
    now: datetime,
) -> LinkageOutcome:
    store = service.store
    if store.get(trial_id) is None:
        raise TrialNotFoundError()
    if store.other_holder_of_external(identity.external_id, exclude_id=trial_id) is not None:
        logger.info("GitHub login=%s already holds another trial; refusing extension of %s.", identity.username, trial_id)
        raise ExternalIdentityReusedError()
    record = service.extend(trial_id, identity.external_id, identity.username, identity.email, now=now)
    return LinkageOutcome(ACTION_EXTENDED, record, identity)


__all__ = [
    "ACTION_EXTENDED",
    "ACTION_LINKED",
    "ACTION_REACTIVATED",
    "ACTION_REBOUND",
    "ACTION_STARTED",
    "LinkageOutcome",
    "handle_callback",
]
