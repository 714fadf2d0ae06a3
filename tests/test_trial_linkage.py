import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from core.clock import as_utc
from core.trial_constants import TrialStage
from models.trial import TrialRecord
from services.trial_callback_state import TrialExtendIntent, TrialStartIntent, encode_callback_state
from services.trial_conversion import ConversionCandidates, convert
from services.trial_errors import (
    AlreadyConvertedError,
    CooldownActiveError,
    DeviceLinkedElsewhereError,
    ExternalIdentityReusedError,
    InvalidCallbackStateError,
    TransientUpstreamError,
    TrialNotFoundError,
)
from services.trial_linkage import handle_callback
from services.trial_service import ExternalIdentity, TrialLifecycleService
from services.trial_store import TrialStore

ALICE = ExternalIdentity(external_id="gh-42", username="alice", email="a@x.com")


class FakeIdentityClient:
    def __init__(self, identity=ALICE, error=None):
        self.identity = identity
        self.error = error
        self.codes = []

    async def resolve_identity(self, code):
        self.codes.append(code)
        if self.error is not None:
            raise self.error
        return self.identity


def _callback(session, state, *, now, client=None):
    return asyncio.run(
        handle_callback(
            session,
            code="code-1",
            state=state,
            identity_client=client or FakeIdentityClient(),
            now=now,
        )
    )


def _start_state(device_id: str) -> str:
    return encode_callback_state(TrialStartIntent(device_id=device_id))


def test_start_without_history_creates_linked_trial(db_session, now):
    outcome = _callback(db_session, _start_state("dev-1"), now=now)

    record = outcome.record
    assert outcome.action == "started"
    assert record.stage == TrialStage.ANONYMOUS
    assert record.device_id == "dev-1"
    assert record.external_id == "gh-42"
    assert as_utc(record.expires_at) == now + timedelta(days=7)


def test_start_links_identity_to_active_device_trial(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)

    outcome = _callback(db_session, _start_state("dev-1"), now=now + timedelta(days=2))

    assert outcome.action == "linked"
    assert outcome.record.id == trial.id
    assert outcome.record.external_id == "gh-42"
    assert outcome.record.stage == TrialStage.ANONYMOUS
    assert as_utc(outcome.record.expires_at) == now + timedelta(days=7)


def test_start_on_new_device_rebinds_active_identity_trial(db_session, now):
    first = _callback(db_session, _start_state("dev-1"), now=now).record

    outcome = _callback(db_session, _start_state("dev-2"), now=now + timedelta(days=1))

    assert outcome.action == "rebound"
    assert outcome.record.id == first.id
    assert outcome.record.device_id == "dev-2"
    assert as_utc(outcome.record.expires_at) == now + timedelta(days=7)


def test_start_reactivates_identity_trial_after_cooldown(db_session, now):
    first = _callback(db_session, _start_state("dev-1"), now=now).record
    later = now + timedelta(days=38)

    outcome = _callback(db_session, _start_state("dev-2"), now=later)

    assert outcome.action == "reactivated"
    assert outcome.record.id == first.id
    assert outcome.record.device_id == "dev-2"
    assert as_utc(outcome.record.expires_at) == later + timedelta(days=7)


def test_start_during_cooldown_is_rejected(db_session, now):
    _callback(db_session, _start_state("dev-1"), now=now)

    with pytest.raises(CooldownActiveError) as exc_info:
        _callback(db_session, _start_state("dev-1"), now=now + timedelta(days=17))
    assert exc_info.value.days_remaining == 20


def test_start_for_converted_identity_is_rejected(db_session, now):
    first = _callback(db_session, _start_state("dev-1"), now=now).record
    TrialLifecycleService(db_session).convert(first.id, "team-1", now=now)

    with pytest.raises(AlreadyConvertedError):
        _callback(db_session, _start_state("dev-2"), now=now + timedelta(days=1))


def test_start_cannot_take_device_from_converted_trial(db_session, now):
    service = TrialLifecycleService(db_session)
    paid = service.create("dev-shared", now=now)
    service.convert(paid.id, "ent-1", now=now)
    paid_updated_at = as_utc(TrialStore(db_session).get(paid.id).updated_at)
    octo = FakeIdentityClient(ExternalIdentity(external_id="gh-9", username="octo"))
    own = _callback(db_session, _start_state("dev-other"), now=now, client=octo).record

    with pytest.raises(AlreadyConvertedError):
        _callback(db_session, _start_state("dev-shared"), now=now + timedelta(days=1), client=octo)

    store = TrialStore(db_session)
    assert store.get(paid.id).device_id == "dev-shared"
    assert as_utc(store.get(paid.id).updated_at) == paid_updated_at
    assert store.get(own.id).device_id == "dev-other"

    retried = convert(db_session, "ent-1", ConversionCandidates(device_id="dev-shared"), now=now + timedelta(days=2))
    assert retried.id == paid.id
    assert store.get(own.id).stage == TrialStage.ANONYMOUS
    assert store.get(own.id).converted_entitlement_id is None


def test_start_on_device_linked_to_other_identity(db_session, now):
    _callback(db_session, _start_state("dev-1"), now=now)
    bob = FakeIdentityClient(ExternalIdentity(external_id="gh-7", username="bob"))

    with pytest.raises(DeviceLinkedElsewhereError):
        _callback(db_session, _start_state("dev-1"), now=now, client=bob)


def test_start_resets_expired_unlinked_device_trial_with_identity(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)
    later = now + timedelta(days=40)

    outcome = _callback(db_session, _start_state("dev-1"), now=later)

    assert outcome.action == "reactivated"
    assert outcome.record.id == trial.id
    assert outcome.record.external_id == "gh-42"
    assert as_utc(outcome.record.started_at) == later


def test_extend_intent_extends_trial(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)
    state = encode_callback_state(TrialExtendIntent(trial_id=trial.id))

    outcome = _callback(db_session, state, now=now + timedelta(days=3))

    assert outcome.action == "extended"
    assert outcome.record.stage == TrialStage.EXTENDED
    assert as_utc(outcome.record.expires_at) == now + timedelta(days=10)


def test_legacy_state_extends_trial(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)

    outcome = _callback(db_session, str(trial.id), now=now)

    assert outcome.action == "extended"
    assert outcome.record.external_id == "gh-42"


def test_extend_intent_rejects_reused_identity(db_session, now):
    _callback(db_session, _start_state("dev-1"), now=now)
    other = TrialLifecycleService(db_session).create("dev-2", now=now)

    with pytest.raises(ExternalIdentityReusedError):
        _callback(db_session, str(other.id), now=now)


def test_extend_intent_for_unknown_trial(db_session, now):
    with pytest.raises(TrialNotFoundError):
        _callback(db_session, str(uuid.uuid4()), now=now)


def test_upstream_failure_writes_nothing(db_session, now):
    client = FakeIdentityClient(error=TransientUpstreamError())

    with pytest.raises(TransientUpstreamError):
        _callback(db_session, _start_state("dev-1"), now=now, client=client)

    count = db_session.execute(select(func.count()).select_from(TrialRecord)).scalar_one()
    assert count == 0


def test_invalid_state_is_rejected_before_exchange(db_session, now):
    client = FakeIdentityClient()

    with pytest.raises(InvalidCallbackStateError):
        _callback(db_session, "garbage", now=now, client=client)

    assert client.codes == []
    assert TrialStore(db_session).get_by_device("dev-1") is None
