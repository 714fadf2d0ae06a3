"""Public trial endpoints used by the CLI and the GitHub OAuth redirect."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from database import get_db
from models.trial import TrialRecord
from schemas.api.trial import TrialStartRequest, TrialStatusResponse
from services.auth.github_identity import get_github_identity_client
from services.trial_callback_state import (
    CallbackIntent,
    TrialExtendIntent,
    TrialStartIntent,
    encode_callback_state,
)
from services.trial_errors import (
    InvalidCallbackStateError,
    OAuthDeniedError,
    OAuthNotConfiguredError,
    TrialNotFoundError,
    TrialServiceError,
)
from services.trial_linkage import handle_callback
from services.trial_page_renderer import render_callback_failure, render_callback_success
from services.trial_service import TrialLifecycleService, compute_status

router = APIRouter(prefix="/trial", tags=["Trial"])

logger = logging.getLogger(__name__)


def _http_error(exc: TrialServiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _extension_url(record: TrialRecord) -> Optional[str]:
    try:
        client = get_github_identity_client()
    except OAuthNotConfiguredError:
        return None
    return client.build_authorize_url(encode_callback_state(TrialExtendIntent(trial_id=record.id)))


def _status_response(record: TrialRecord) -> TrialStatusResponse:
    status_view = compute_status(record)
    payload = status_view.to_dict()
    if status_view.can_extend:
        payload["authorizeUrl"] = _extension_url(record)
    return TrialStatusResponse(**payload)


@router.post("/start", response_model=TrialStatusResponse)
def start_trial(payload: TrialStartRequest, db: Session = Depends(get_db)) -> TrialStatusResponse:
    service = TrialLifecycleService(db)
    try:
        record = service.create(payload.deviceId, platform=payload.platform, machine_id=payload.machineId)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "trial.invalid_request", "message": str(exc)},
        ) from exc
    except TrialServiceError as exc:
        raise _http_error(exc) from exc
    return _status_response(record)


@router.get("/status", response_model=TrialStatusResponse)
def read_trial_status(
    trial_id: uuid.UUID = Query(..., alias="trialId"),
    db: Session = Depends(get_db),
) -> TrialStatusResponse:
    record = TrialLifecycleService(db).store.get(trial_id)
    if record is None:
        raise _http_error(TrialNotFoundError())
    return _status_response(record)


@router.get("/github/authorize", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
def authorize_github(
    device_id: Optional[str] = Query(default=None, alias="deviceId", max_length=128),
    trial_id: Optional[uuid.UUID] = Query(default=None, alias="trialId"),
) -> RedirectResponse:
    """Redirect the browser to GitHub with a state describing what the callback should do."""
    if bool(device_id) == bool(trial_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "trial.invalid_request", "message": "Provide exactly one of deviceId or trialId."},
        )
    intent: CallbackIntent
    if trial_id is not None:
        intent = TrialExtendIntent(trial_id=trial_id)
    else:
        intent = TrialStartIntent(device_id=(device_id or "").strip())
    try:
        client = get_github_identity_client()
    except OAuthNotConfiguredError as exc:
        raise _http_error(exc) from exc
    url = client.build_authorize_url(encode_callback_state(intent))
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/github/callback", response_class=HTMLResponse)
async def github_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> HTMLResponse:
    """Terminal page for the OAuth round trip; every outcome renders HTML with a reason code."""
    try:
        if error:
            logger.info("GitHub callback returned error=%s.", error)
            raise OAuthDeniedError()
        if not code or not state:
            raise InvalidCallbackStateError("The sign-in callback is missing its code or state.")
        client = get_github_identity_client()
        outcome = await handle_callback(db, code=code, state=state, identity_client=client)
    except TrialServiceError as exc:
        logger.info("Trial callback failed with %s.", exc.code)
        return HTMLResponse(render_callback_failure(exc), status_code=exc.status_code)
    except Exception as exc:
        db.rollback()
        logger.exception("Trial callback crashed: %s", exc)
        return HTMLResponse(
            render_callback_failure(TrialServiceError()),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    logger.info("Trial callback %s for trial %s.", outcome.action, outcome.record.id)
    return HTMLResponse(render_callback_success(outcome))


__all__ = ["router"]
