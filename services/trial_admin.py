"""Read-side admin helpers: paginated listing and aggregate statistics."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from core.clock import as_utc, utcnow
from core.env import env_int
from core.logging import get_logger
from core.trial_constants import ACTIVE_TRIAL_STAGES, TrialStage
from models.trial import TrialRecord
from services.trial_service import TrialStatus, compute_status

logger = get_logger(__name__)

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = env_int("TRIAL_ADMIN_PAGE_LIMIT_MAX", 200, minimum=1)


@dataclass(frozen=True)
class TrialListItem:
    record: TrialRecord
    status: TrialStatus

    def to_dict(self) -> Dict[str, Any]:
        record = self.record
        payload = self.status.to_dict()
        payload.update(
            {
                "storedStage": self.status.stored_stage.value,
                "deviceId": record.device_id,
                "githubId": record.external_id,
                "email": record.email,
                "platform": record.platform,
                "flagReason": record.flag_reason,
                "extendedAt": as_utc(record.extended_at).isoformat() if record.extended_at else None,
                "convertedAt": as_utc(record.converted_at).isoformat() if record.converted_at else None,
                "entitlementId": record.converted_entitlement_id,
                "createdAt": as_utc(record.created_at).isoformat() if record.created_at else None,
            }
        )
        return payload


@dataclass(frozen=True)
class TrialPage:
    items: List[TrialListItem]
    page: int
    limit: int
    total: int
    pages: int


@dataclass(frozen=True)
class TrialStats:
    total: int = 0
    active_anonymous: int = 0
    active_extended: int = 0
    expired: int = 0
    converted: int = 0
    flagged: int = 0
    expiring_today: int = 0
    expiring_this_week: int = 0
    conversion_rate: float = 0.0
    extension_rate: float = 0.0
    generated_at: Optional[datetime] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "activeAnonymous": self.active_anonymous,
            "activeExtended": self.active_extended,
            "expired": self.expired,
            "converted": self.converted,
            "flagged": self.flagged,
            "expiringToday": self.expiring_today,
            "expiringThisWeek": self.expiring_this_week,
            "conversionRate": self.conversion_rate,
            "extensionRate": self.extension_rate,
        }


def _active_in(stage: TrialStage, now: datetime) -> ColumnElement[bool]:
    return and_(TrialRecord.stage == stage, TrialRecord.expires_at >= now)


def _effectively_expired(now: datetime) -> ColumnElement[bool]:
    return or_(
        TrialRecord.stage == TrialStage.EXPIRED,
        and_(TrialRecord.stage.in_(tuple(ACTIVE_TRIAL_STAGES)), TrialRecord.expires_at < now),
    )


def _effective_stage_filter(stage: TrialStage, now: datetime) -> ColumnElement[bool]:
    if stage == TrialStage.EXPIRED:
        return _effectively_expired(now)
    if stage == TrialStage.CONVERTED:
        return TrialRecord.stage == TrialStage.CONVERTED
    return _active_in(stage, now)


def _expiring_between(start: datetime, end: datetime) -> ColumnElement[bool]:
    return and_(
        TrialRecord.stage.in_(tuple(ACTIVE_TRIAL_STAGES)),
        TrialRecord.expires_at > start,
        TrialRecord.expires_at <= end,
    )


def _rate(part: int, total: int) -> float:
    """Percentage of ``total`` rounded half-up to one decimal."""
    if total <= 0:
        return 0.0
    return math.floor(part / total * 1000 + 0.5) / 10


def list_trials(
    session: Session,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    stage: Optional[TrialStage] = None,
    flagged: Optional[bool] = None,
    expiring_within_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TrialPage:
    reference = as_utc(now) or utcnow()
    page = max(1, int(page))
    limit = max(1, min(int(limit), MAX_PAGE_LIMIT))

    criteria: List[ColumnElement[bool]] = []
    if stage is not None:
        criteria.append(_effective_stage_filter(TrialStage(stage), reference))
    if flagged is not None:
        criteria.append(TrialRecord.flagged.is_(bool(flagged)))
    if expiring_within_days is not None:
        criteria.append(_expiring_between(reference, reference + timedelta(days=max(0, expiring_within_days))))

    total_stmt = select(func.count()).select_from(TrialRecord).where(*criteria)
    total = int(session.execute(total_stmt).scalar_one() or 0)

    stmt = (
        select(TrialRecord)
        .where(*criteria)
        .order_by(TrialRecord.created_at.desc(), TrialRecord.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    records = session.execute(stmt).scalars().all()
    items = [TrialListItem(record=record, status=compute_status(record, now=reference)) for record in records]
    pages = math.ceil(total / limit) if total else 0
    return TrialPage(items=items, page=page, limit=limit, total=total, pages=pages)


def compute_stats(session: Session, *, now: Optional[datetime] = None) -> TrialStats:
    reference = as_utc(now) or utcnow()
    end_of_day = reference.replace(hour=23, minute=59, second=59, microsecond=999999)
    week_ahead = reference + timedelta(days=7)

    def count(*criteria: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(TrialRecord).where(*criteria)
        return int(session.execute(stmt).scalar_one() or 0)

    total = count()
    active_extended = count(_active_in(TrialStage.EXTENDED, reference))
    converted = count(TrialRecord.stage == TrialStage.CONVERTED)
    stats = TrialStats(
        total=total,
        active_anonymous=count(_active_in(TrialStage.ANONYMOUS, reference)),
        active_extended=active_extended,
        expired=count(_effectively_expired(reference)),
        converted=converted,
        flagged=count(TrialRecord.flagged.is_(True)),
        expiring_today=count(_expiring_between(reference, end_of_day)),
        expiring_this_week=count(_expiring_between(reference, week_ahead)),
        conversion_rate=_rate(converted, total),
        extension_rate=_rate(active_extended, total),
        generated_at=reference,
    )
    logger.debug("Computed trial stats total=%d converted=%d.", stats.total, stats.converted)
    return stats


__all__ = [
    "DEFAULT_PAGE_LIMIT",
    "MAX_PAGE_LIMIT",
    "TrialListItem",
    "TrialPage",
    "TrialStats",
    "compute_stats",
    "list_trials",
]
