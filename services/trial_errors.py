"""Typed outcomes raised by the trial lifecycle, linkage and conversion services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class TrialServiceError(RuntimeError):
    """Base error carrying a machine-checkable ``code`` and an HTTP status hint."""

    code = "trial.error"
    status_code = 400
    default_message = "The trial request could not be completed."

    def __init__(self, message: Optional[str] = None, *, extra: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = dict(extra or {})

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.extra:
            detail.update(self.extra)
        return detail


class TrialNotFoundError(TrialServiceError):
    code = "trial.not_found"
    status_code = 404
    default_message = "Trial not found."


class AlreadyExtendedError(TrialServiceError):
    code = "trial.already_extended"
    default_message = "This trial has already been extended. Upgrade to continue."


class AlreadyConvertedError(TrialServiceError):
    code = "trial.already_converted"
    status_code = 409
    default_message = "This account already has a paid subscription."


class ExternalIdentityReusedError(TrialServiceError):
    code = "trial.external_identity_reused"
    status_code = 403
    default_message = "This GitHub account has already been used for a trial. Please upgrade to continue."


class CooldownActiveError(TrialServiceError):
    code = "trial.cooldown_active"
    status_code = 403

    def __init__(self, days_remaining: int) -> None:
        self.days_remaining = max(0, int(days_remaining))
        unit = "day" if self.days_remaining == 1 else "days"
        super().__init__(
            f"You will be eligible for a new trial in {self.days_remaining} {unit}.",
            extra={"daysRemaining": self.days_remaining},
        )


class TrialExpiredError(TrialServiceError):
    """Extend was attempted on an expired trial; Reactivate is the only way back."""

    code = "trial.expired"
    status_code = 409
    default_message = "This trial has expired and cannot be extended. Reactivate it after the cooldown instead."


class TrialNotExpiredError(TrialServiceError):
    code = "trial.not_expired"
    status_code = 409
    default_message = "This trial is still active and cannot be reactivated."


class DeviceLinkedElsewhereError(TrialServiceError):
    code = "trial.device_linked"
    status_code = 403
    default_message = "This device is already linked to a different GitHub account."


class ConflictingTransitionError(TrialServiceError):
    code = "trial.conflicting_transition"
    status_code = 409
    default_message = "The trial changed while the request was processed. Please retry."


class TransientUpstreamError(TrialServiceError):
    code = "trial.upstream_unavailable"
    status_code = 502
    default_message = "GitHub could not be reached. Please try again in a moment."


class OAuthNotConfiguredError(TrialServiceError):
    code = "trial.oauth_disabled"
    status_code = 503
    default_message = "GitHub sign-in is not configured."


class InvalidCallbackStateError(TrialServiceError):
    code = "trial.invalid_state"
    default_message = "The sign-in link is invalid or damaged. Please start again from the CLI."


class OAuthDeniedError(TrialServiceError):
    """GitHub redirected back with ``error`` (user cancelled or app suspended)."""

    code = "trial.oauth_denied"
    default_message = "GitHub sign-in was cancelled. Run the command again to retry."


class DuplicateTrialIdentity(RuntimeError):
    """Raised by the store when an insert or bind hits a uniqueness constraint."""

    def __init__(self, field: str) -> None:
        super().__init__(f"duplicate trial identity on {field}")
        self.field = field


__all__ = [
    "AlreadyConvertedError",
    "AlreadyExtendedError",
    "ConflictingTransitionError",
    "CooldownActiveError",
    "DeviceLinkedElsewhereError",
    "DuplicateTrialIdentity",
    "ExternalIdentityReusedError",
    "InvalidCallbackStateError",
    "OAuthDeniedError",
    "OAuthNotConfiguredError",
    "TransientUpstreamError",
    "TrialExpiredError",
    "TrialNotExpiredError",
    "TrialNotFoundError",
    "TrialServiceError",
]
