"""Admin trial moderation and reporting schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from schemas.api.trial import TrialStatusResponse


class AdminTrialItem(TrialStatusResponse):
    storedStage: str
    deviceId: Optional[str] = None
    githubId: Optional[str] = None
    email: Optional[str] = None
    platform: Optional[str] = None
    flagReason: Optional[str] = None
    extendedAt: Optional[str] = None
    convertedAt: Optional[str] = None
    entitlementId: Optional[str] = None
    createdAt: Optional[str] = None


class AdminTrialPagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class AdminTrialListResponse(BaseModel):
    items: List[AdminTrialItem] = Field(default_factory=list)
    pagination: AdminTrialPagination


class AdminTrialStatsResponse(BaseModel):
    total: int
    activeAnonymous: int
    activeExtended: int
    expired: int
    converted: int
    flagged: int
    expiringToday: int
    expiringThisWeek: int
    conversionRate: float
    extensionRate: float


class AdminTrialFlagRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Why the trial is being flagged for review.")


class AdminTrialActionResponse(BaseModel):
    trial: AdminTrialItem
    actor: str


class AdminTrialEvent(BaseModel):
    action: str
    actor: Optional[str] = None
    fromStage: Optional[str] = None
    toStage: Optional[str] = None
    context: Optional[dict] = None
    createdAt: Optional[str] = None


class AdminTrialDetailResponse(BaseModel):
    trial: AdminTrialItem
    events: List[AdminTrialEvent] = Field(default_factory=list)
