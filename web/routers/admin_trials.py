"""Admin endpoints for trial moderation and reporting."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from core.clock import as_utc
from core.trial_constants import EXPIRING_SOON_DAYS, TrialStage
from database import get_db
from models.trial import TrialRecord
from schemas.api.admin_trials import (
    AdminTrialActionResponse,
    AdminTrialDetailResponse,
    AdminTrialEvent,
    AdminTrialFlagRequest,
    AdminTrialItem,
    AdminTrialListResponse,
    AdminTrialPagination,
    AdminTrialStatsResponse,
)
from services.trial_admin import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, TrialListItem, compute_stats, list_trials
from services.trial_audit import list_trial_events
from services.trial_errors import TrialNotFoundError, TrialServiceError
from services.trial_service import TrialLifecycleService, compute_status
from web.deps_admin import AdminSession, require_admin_session

router = APIRouter(prefix="/admin/trials", tags=["Admin Trials"])


def _http_error(exc: TrialServiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _item(record: TrialRecord) -> AdminTrialItem:
    return AdminTrialItem(**TrialListItem(record=record, status=compute_status(record)).to_dict())


@router.get("", response_model=AdminTrialListResponse)
def list_admin_trials(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    stage: Optional[TrialStage] = Query(default=None),
    flagged: Optional[bool] = Query(default=None),
    expiring_soon: bool = Query(default=False, alias="expiringSoon"),
    expiring_within_days: Optional[int] = Query(default=None, ge=0, le=365, alias="expiringWithinDays"),
    _admin: AdminSession = Depends(require_admin_session),
    db: Session = Depends(get_db),
) -> AdminTrialListResponse:
    if expiring_within_days is None and expiring_soon:
        expiring_within_days = EXPIRING_SOON_DAYS
    result = list_trials(
        db,
        page=page,
        limit=limit,
        stage=stage,
        flagged=flagged,
        expiring_within_days=expiring_within_days,
    )
    return AdminTrialListResponse(
        items=[AdminTrialItem(**item.to_dict()) for item in result.items],
        pagination=AdminTrialPagination(
            page=result.page,
            limit=result.limit,
            total=result.total,
            pages=result.pages,
        ),
    )


@router.get("/stats", response_model=AdminTrialStatsResponse)
def read_admin_trial_stats(
    _admin: AdminSession = Depends(require_admin_session),
    db: Session = Depends(get_db),
) -> AdminTrialStatsResponse:
    return AdminTrialStatsResponse(**compute_stats(db).to_dict())


@router.get("/{trial_id}", response_model=AdminTrialDetailResponse)
def read_admin_trial(
    trial_id: uuid.UUID,
    _admin: AdminSession = Depends(require_admin_session),
    db: Session = Depends(get_db),
) -> AdminTrialDetailResponse:
    record = TrialLifecycleService(db).store.get(trial_id)
    if record is None:
        raise _http_error(TrialNotFoundError())
    events = [
        AdminTrialEvent(
            action=event.action,
            actor=event.actor,
            fromStage=event.from_stage,
            toStage=event.to_stage,
            context=event.context,
            createdAt=as_utc(event.created_at).isoformat() if event.created_at else None,
        )
        for event in list_trial_events(db, trial_id)
    ]
    return AdminTrialDetailResponse(trial=_item(record), events=events)


@router.post("/{trial_id}/flag", response_model=AdminTrialActionResponse)
def flag_admin_trial(
    trial_id: uuid.UUID,
    payload: AdminTrialFlagRequest,
    admin: AdminSession = Depends(require_admin_session),
    db: Session = Depends(get_db),
) -> AdminTrialActionResponse:
    try:
        record = TrialLifecycleService(db).flag(trial_id, payload.reason.strip(), actor=admin.actor)
    except TrialServiceError as exc:
        raise _http_error(exc) from exc
    return AdminTrialActionResponse(trial=_item(record), actor=admin.actor)


@router.delete("/{trial_id}/flag", response_model=AdminTrialActionResponse)
def unflag_admin_trial(
    trial_id: uuid.UUID,
    admin: AdminSession = Depends(require_admin_session),
    db: Session = Depends(get_db),
) -> AdminTrialActionResponse:
    try:
        record = TrialLifecycleService(db).unflag(trial_id, actor=admin.actor)
    except TrialServiceError as exc:
        raise _http_error(exc) from exc
    return AdminTrialActionResponse(trial=_item(record), actor=admin.actor)


@router.post("/{trial_id}/expire", response_model=AdminTrialActionResponse)
def expire_admin_trial(
    trial_id: uuid.UUID,
    admin: AdminSession = Depends(require_admin_session),
    db: Session = Depends(get_db),
) -> AdminTrialActionResponse:
    try:
        record = TrialLifecycleService(db).force_expire(trial_id, actor=admin.actor)
    except TrialServiceError as exc:
        raise _http_error(exc) from exc
    return AdminTrialActionResponse(trial=_item(record), actor=admin.actor)


__all__ = ["router"]
