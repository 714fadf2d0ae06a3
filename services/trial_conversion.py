"""Mark the trial behind a paid entitlement as converted."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session

from core.logging import get_logger, mask_identifier
from models.trial import TrialRecord
from services.trial_metrics import record_transition
from services.trial_service import TrialLifecycleService
from services.trial_store import TrialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConversionCandidates:
    """Identifiers a payment event may carry to locate the originating trial."""

    device_id: Optional[str] = None
    external_id: Optional[str] = None
    email: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.device_id or self.external_id or self.email)


_Lookup = Callable[[TrialStore, ConversionCandidates], Optional[TrialRecord]]

# First match wins.
CONVERSION_LOOKUP_ORDER: Tuple[Tuple[str, _Lookup], ...] = (
    ("device_id", lambda store, candidates: store.get_by_device(candidates.device_id or "")),
    ("external_id", lambda store, candidates: store.get_by_external(candidates.external_id or "")),
    ("email", lambda store, candidates: store.find_by_email((candidates.email or "").strip())),
)


def locate_trial(store: TrialStore, candidates: ConversionCandidates) -> Tuple[Optional[str], Optional[TrialRecord]]:
    for name, lookup in CONVERSION_LOOKUP_ORDER:
        record = lookup(store, candidates)
        if record is not None:
            return name, record
    return None, None


def convert(
    session: Session,
    entitlement_id: str,
    candidates: ConversionCandidates,
    *,
    now: Optional[datetime] = None,
) -> Optional[TrialRecord]:
    """Convert the matching trial, or return ``None`` when the purchase had no trial."""
    if not entitlement_id or not entitlement_id.strip():
        raise ValueError("entitlement_id is required")
    entitlement_id = entitlement_id.strip()

    service = TrialLifecycleService(session)
    matched_by, record = (None, None) if candidates.is_empty() else locate_trial(service.store, candidates)
    if record is None:
        record_transition("convert", "no_trial")
        logger.info(
            "Entitlement %s has no matching trial (device=%s external=%s).",
            entitlement_id,
            mask_identifier(candidates.device_id),
            mask_identifier(candidates.external_id),
        )
        return None

    logger.info("Entitlement %s matched trial %s by %s.", entitlement_id, record.id, matched_by)
    return service.convert(record.id, entitlement_id, now=now)


def find_conversion(session: Session, entitlement_id: str) -> Optional[TrialRecord]:
    return TrialStore(session).get_by_entitlement(entitlement_id)


__all__ = ["CONVERSION_LOOKUP_ORDER", "ConversionCandidates", "convert", "find_conversion", "locate_trial"]
