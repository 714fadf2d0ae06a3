"""Internal billing hook that marks the originating trial as converted."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from core.trial_constants import TrialStage
from database import get_db
from schemas.api.trial import TrialConversionRequest, TrialConversionResponse, TrialStatusResponse
from services.trial_conversion import ConversionCandidates, convert
from services.trial_errors import TrialServiceError
from services.trial_service import compute_status
from web.deps_admin import require_billing_service

router = APIRouter(prefix="/billing", tags=["Billing"], dependencies=[Depends(require_billing_service)])

logger = logging.getLogger(__name__)


@router.post("/trial-conversions", response_model=TrialConversionResponse)
def record_trial_conversion(
    payload: TrialConversionRequest,
    db: Session = Depends(get_db),
) -> TrialConversionResponse:
    """Called after a subscription is activated; a purchase with no trial is a normal outcome."""
    candidates = ConversionCandidates(
        device_id=payload.deviceId,
        external_id=payload.externalId,
        email=payload.email,
    )
    try:
        record = convert(db, payload.entitlementId, candidates)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "billing.invalid_request", "message": str(exc)},
        ) from exc
    except TrialServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc

    if record is None:
        return TrialConversionResponse(converted=False, trial=None)
    return TrialConversionResponse(
        converted=record.stage == TrialStage.CONVERTED,
        trial=TrialStatusResponse(**compute_status(record).to_dict()),
    )


__all__ = ["router"]
