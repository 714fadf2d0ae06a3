"""Trial API schemas."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from core.trial_constants import TrialStage


class TrialStartRequest(BaseModel):
    deviceId: str = Field(..., min_length=1, max_length=128, description="Stable device fingerprint from the CLI.")
    platform: Optional[str] = Field(default=None, max_length=64, description="Client platform label, e.g. darwin.")
    machineId: Optional[str] = Field(default=None, max_length=128, description="Optional secondary machine id.")


class TrialStatusResponse(BaseModel):
    trialId: str
    stage: TrialStage
    daysRemaining: int = Field(..., ge=0)
    isExpired: bool
    canExtend: bool
    isExpiringSoon: bool = False
    expiresAt: Optional[str] = None
    startedAt: Optional[str] = None
    githubUsername: Optional[str] = None
    flagged: bool = False
    authorizeUrl: Optional[str] = Field(
        default=None,
        description="GitHub authorize URL to extend the trial when extension is still possible.",
    )


class TrialConversionRequest(BaseModel):
    entitlementId: str = Field(..., min_length=1, max_length=128, description="Paid entitlement (team/subscription) id.")
    deviceId: Optional[str] = Field(default=None, max_length=128)
    externalId: Optional[str] = Field(default=None, max_length=64, description="GitHub user id of the purchaser.")
    email: Optional[str] = Field(default=None, max_length=320)


class TrialConversionResponse(BaseModel):
    converted: bool
    trial: Optional[TrialStatusResponse] = None
