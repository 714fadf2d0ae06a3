"""Shared trial stage constants and window lengths."""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet

from core.env import env_days, env_int


class TrialStage(str, Enum):
    ANONYMOUS = "anonymous"
    EXTENDED = "extended"
    EXPIRED = "expired"
    CONVERTED = "converted"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


ACTIVE_TRIAL_STAGES: FrozenSet[TrialStage] = frozenset({TrialStage.ANONYMOUS, TrialStage.EXTENDED})

ANONYMOUS_WINDOW = env_days("TRIAL_ANONYMOUS_WINDOW_DAYS", 7)
EXTENSION_WINDOW = env_days("TRIAL_EXTENSION_WINDOW_DAYS", 7)
REACTIVATION_COOLDOWN = env_days("TRIAL_REACTIVATION_COOLDOWN_DAYS", 30)
EXPIRING_SOON_DAYS = env_int("TRIAL_EXPIRING_SOON_DAYS", 2, minimum=0)

__all__ = [
    "ACTIVE_TRIAL_STAGES",
    "ANONYMOUS_WINDOW",
    "EXPIRING_SOON_DAYS",
    "EXTENSION_WINDOW",
    "REACTIVATION_COOLDOWN",
    "TrialStage",
]
