"""OAuth ``state`` parameter codec for the GitHub trial callback.

Older CLI builds send the bare trial id as ``state``; newer ones send an
unpadded base64url JSON object tagged with ``type``. Both are parsed once into
an intent object so the linkage handler never inspects raw strings.
"""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Union

from services.trial_errors import InvalidCallbackStateError

_TRIAL_START = "trial_start"
_TRIAL_EXTEND = "trial_extend"


@dataclass(frozen=True)
class TrialStartIntent:
    device_id: str


@dataclass(frozen=True)
class TrialExtendIntent:
    trial_id: uuid.UUID


@dataclass(frozen=True)
class LegacyExtendIntent:
    trial_id: uuid.UUID


CallbackIntent = Union[TrialStartIntent, TrialExtendIntent, LegacyExtendIntent]


def _parse_uuid(value: Any) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidCallbackStateError("Callback state carries an invalid trial id.") from None


def encode_callback_state(intent: CallbackIntent) -> str:
    if isinstance(intent, LegacyExtendIntent):
        return str(intent.trial_id)
    if isinstance(intent, TrialStartIntent):
        payload: Dict[str, Any] = {"type": _TRIAL_START, "deviceId": intent.device_id}
    elif isinstance(intent, TrialExtendIntent):
        payload = {"type": _TRIAL_EXTEND, "trialId": str(intent.trial_id)}
    else:
        raise TypeError(f"Unsupported callback intent: {intent!r}")
    serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return base64.urlsafe_b64encode(serialized.encode("utf-8")).decode("utf-8").rstrip("=")


def decode_callback_state(token: str) -> CallbackIntent:
    """Parse ``state`` into a typed intent or raise :class:`InvalidCallbackStateError`."""
    raw_token = (token or "").strip()
    if not raw_token:
        raise InvalidCallbackStateError("Callback state is missing.")

    try:
        return LegacyExtendIntent(trial_id=uuid.UUID(raw_token))
    except ValueError:
        pass

    padding = "=" * (-len(raw_token) % 4)
    try:
        decoded = base64.urlsafe_b64decode(raw_token + padding).decode("utf-8")
        payload = json.loads(decoded)
    except (ValueError, binascii.Error):
        raise InvalidCallbackStateError() from None
    if not isinstance(payload, dict):
        raise InvalidCallbackStateError()

    intent_type = payload.get("type")
    if intent_type == _TRIAL_START:
        device_id = payload.get("deviceId") or payload.get("deviceHash")
        if not isinstance(device_id, str) or not device_id.strip():
            raise InvalidCallbackStateError("Callback state is missing the device id.")
        return TrialStartIntent(device_id=device_id.strip())
    if intent_type == _TRIAL_EXTEND:
        return TrialExtendIntent(trial_id=_parse_uuid(payload.get("trialId")))
    raise InvalidCallbackStateError()


__all__ = [
    "CallbackIntent",
    "LegacyExtendIntent",
    "TrialExtendIntent",
    "TrialStartIntent",
    "decode_callback_state",
    "encode_callback_state",
]
