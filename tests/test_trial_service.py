import uuid
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from core.clock import as_utc
from core.trial_constants import TrialStage
from models.trial import TrialRecord
from services.trial_audit import list_trial_events
from services.trial_errors import (
    AlreadyConvertedError,
    AlreadyExtendedError,
    ConflictingTransitionError,
    CooldownActiveError,
    ExternalIdentityReusedError,
    TrialExpiredError,
    TrialNotExpiredError,
    TrialNotFoundError,
)
from services.trial_service import TrialLifecycleService, compute_status
from services.trial_store import GuardedUpdateResult, TrialStore


def _count_records(session) -> int:
    return session.execute(select(func.count()).select_from(TrialRecord)).scalar_one()


def _transition_count(operation: str, result: str) -> float:
    return REGISTRY.get_sample_value("trial_transitions_total", {"operation": operation, "result": result}) or 0.0


def test_create_starts_anonymous_seven_day_window(db_session, now):
    record = TrialLifecycleService(db_session).create("dev-1", platform="darwin", now=now)

    assert record.stage == TrialStage.ANONYMOUS
    assert as_utc(record.started_at) == now
    assert as_utc(record.expires_at) == now + timedelta(days=7)
    assert record.platform == "darwin"
    assert record.flagged is False


def test_create_is_idempotent_per_device(db_session, now):
    service = TrialLifecycleService(db_session)
    first = service.create("dev-1", now=now)
    second = service.create("dev-1", now=now + timedelta(days=3))

    assert second.id == first.id
    assert as_utc(second.expires_at) == now + timedelta(days=7)
    assert _count_records(db_session) == 1


def test_create_returns_expired_record_unchanged(db_session, now):
    service = TrialLifecycleService(db_session)
    first = service.create("dev-1", now=now)
    later = now + timedelta(days=9)

    again = service.create("dev-1", now=later)

    assert again.id == first.id
    assert compute_status(again, now=later).stage == TrialStage.EXPIRED
    assert _count_records(db_session) == 1


def test_create_rejects_blank_device(db_session):
    with pytest.raises(ValueError):
        TrialLifecycleService(db_session).create("   ")


def test_create_race_returns_winner(db_session, now):
    winner = TrialLifecycleService(db_session).create("dev-1", now=now)

    class StaleReadStore(TrialStore):
        stale = True

        def get_by_device(self, device_id):
            if self.stale:
                self.stale = False
                return None
            return super().get_by_device(device_id)

    loser = TrialLifecycleService(db_session, store=StaleReadStore(db_session))
    record = loser.create("dev-1", now=now + timedelta(minutes=1))

    assert record.id == winner.id
    assert _count_records(db_session) == 1


def test_scenario_extend_binds_identity_and_resets_window(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)
    extend_at = now + timedelta(days=1)

    extended = service.extend(trial.id, "gh-42", "alice", "a@x.com", now=extend_at)

    assert extended.stage == TrialStage.EXTENDED
    assert extended.external_id == "gh-42"
    assert extended.external_username == "alice"
    assert as_utc(extended.extended_at) == extend_at
    assert as_utc(extended.expires_at) == extend_at + timedelta(days=7)


def test_extension_is_reset_not_additive(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)
    extend_at = now + timedelta(days=1)
    assert compute_status(trial, now=extend_at).days_remaining == 6

    extended = service.extend(trial.id, "gh-42", "alice", None, now=extend_at)

    assert compute_status(extended, now=extend_at).days_remaining == 7


def test_extend_twice_is_rejected(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)
    service.extend(trial.id, "gh-42", "alice", None, now=now)

    with pytest.raises(AlreadyExtendedError):
        service.extend(trial.id, "gh-42", "alice", None, now=now + timedelta(hours=1))


def test_extend_expired_trial_points_to_reactivation(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)

    with pytest.raises(TrialExpiredError):
        service.extend(trial.id, "gh-42", "alice", None, now=now + timedelta(days=8))


def test_extend_rejects_identity_held_by_other_trial(db_session, now):
    service = TrialLifecycleService(db_session)
    first = service.create("dev-1", now=now)
    service.extend(first.id, "gh-42", "alice", None, now=now)
    second = service.create("dev-2", now=now)

    with pytest.raises(ExternalIdentityReusedError):
        service.extend(second.id, "gh-42", "alice", None, now=now)

    assert TrialStore(db_session).get(second.id).stage == TrialStage.ANONYMOUS


def test_extend_unknown_trial(db_session):
    with pytest.raises(TrialNotFoundError):
        TrialLifecycleService(db_session).extend(uuid.uuid4(), "gh-1", None, None)


def test_extend_converted_trial(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)
    service.convert(trial.id, "team-1", now=now)

    with pytest.raises(AlreadyConvertedError):
        service.extend(trial.id, "gh-1", None, None, now=now)


def _expired_linked_trial(service, now, *, device_id="dev-A", external_id="gh-1"):
    trial = service.create(device_id, now=now)
    return service.extend(trial.id, external_id, "octo", "octo@example.com", now=now)


def test_reactivate_cooldown_boundary(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = _expired_linked_trial(service, now)
    expired_at = as_utc(trial.expires_at)

    with pytest.raises(CooldownActiveError) as exc_info:
        service.reactivate("dev-A", "gh-1", "octo", None, now=expired_at + timedelta(days=29))
    assert exc_info.value.days_remaining == 1
    assert exc_info.value.to_detail()["daysRemaining"] == 1

    reactivate_at = expired_at + timedelta(days=30)
    record = service.reactivate("dev-A", "gh-1", "octo", None, now=reactivate_at)

    assert record.id == trial.id
    assert record.stage == TrialStage.ANONYMOUS
    assert as_utc(record.started_at) == reactivate_at
    assert as_utc(record.expires_at) == reactivate_at + timedelta(days=7)
    assert record.extended_at is None
    assert record.email == "octo@example.com"


def test_scenario_reactivate_during_cooldown_reports_days(db_session, now):
    store = TrialStore(db_session)
    store.insert(
        {
            "device_id": "dev-old",
            "external_id": "gh-7",
            "stage": TrialStage.EXPIRED,
            "started_at": now - timedelta(days=17),
            "expires_at": now - timedelta(days=10),
        }
    )
    db_session.commit()

    with pytest.raises(CooldownActiveError) as exc_info:
        TrialLifecycleService(db_session).reactivate("dev-2", "gh-7", "seven", None, now=now)

    assert exc_info.value.days_remaining == 20
    assert store.get_by_device("dev-old") is not None


def test_reactivate_active_trial_is_rejected(db_session, now):
    service = TrialLifecycleService(db_session)
    _expired_linked_trial(service, now)

    with pytest.raises(TrialNotExpiredError):
        service.reactivate("dev-A", "gh-1", "octo", None, now=now + timedelta(days=1))


def test_reactivate_unknown_identity(db_session, now):
    with pytest.raises(TrialNotFoundError):
        TrialLifecycleService(db_session).reactivate("dev-A", "gh-404", None, None, now=now)


def test_reactivate_moves_device_from_other_record(db_session, now):
    service = TrialLifecycleService(db_session)
    linked = _expired_linked_trial(service, now)
    other = service.create("dev-B", now=now)
    reactivate_at = now + timedelta(days=40)

    record = service.reactivate("dev-B", "gh-1", "octo", None, now=reactivate_at)

    store = TrialStore(db_session)
    assert record.id == linked.id
    assert record.device_id == "dev-B"
    assert store.get(other.id).device_id is None
    assert store.get_by_device("dev-A") is None


def test_reactivate_keeps_flag(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = _expired_linked_trial(service, now)
    service.flag(trial.id, "shared fingerprint", actor="ops")

    record = service.reactivate("dev-A", "gh-1", "octo", None, now=now + timedelta(days=40))

    assert record.flagged is True
    assert record.flag_reason == "shared fingerprint"


def test_converted_is_terminal(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = _expired_linked_trial(service, now)
    converted = service.convert(trial.id, "team-1", now=now)
    assert converted.stage == TrialStage.CONVERTED

    again = service.convert(trial.id, "team-2", now=now + timedelta(days=1))
    assert again.converted_entitlement_id == "team-1"

    with pytest.raises(AlreadyConvertedError):
        service.reactivate("dev-A", "gh-1", None, None, now=now + timedelta(days=60))
    with pytest.raises(AlreadyConvertedError):
        service.force_expire(trial.id, actor="ops", now=now)
    assert TrialStore(db_session).get(trial.id).stage == TrialStage.CONVERTED


def test_force_expire_is_idempotent(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)
    expire_at = now + timedelta(days=2)

    expired = service.force_expire(trial.id, actor="ops", now=expire_at)
    assert expired.stage == TrialStage.EXPIRED
    assert as_utc(expired.expires_at) == expire_at

    again = service.force_expire(trial.id, actor="ops", now=expire_at + timedelta(days=1))
    assert as_utc(again.expires_at) == expire_at

    actions = [event.action for event in list_trial_events(db_session, trial.id)]
    assert actions.count("trial.force_expired") == 1


def test_force_expire_restarts_cooldown_for_lapsed_trial(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now - timedelta(days=20))

    expired = service.force_expire(trial.id, actor="ops", now=now)

    assert expired.stage == TrialStage.EXPIRED
    assert as_utc(expired.expires_at) == now


def test_reactivate_cannot_take_device_from_converted_trial(db_session, now):
    service = TrialLifecycleService(db_session)
    linked = _expired_linked_trial(service, now)
    paid = service.create("dev-B", now=now)
    service.convert(paid.id, "team-9", now=now)

    with pytest.raises(AlreadyConvertedError):
        service.reactivate("dev-B", "gh-1", "octo", None, now=now + timedelta(days=40))

    store = TrialStore(db_session)
    assert store.get(paid.id).device_id == "dev-B"
    assert store.get(linked.id).stage == TrialStage.EXTENDED
    assert store.get(linked.id).device_id == "dev-A"


def test_flag_and_unflag_record_audit_events(db_session, now):
    service = TrialLifecycleService(db_session)
    trial = service.create("dev-1", now=now)

    flagged = service.flag(trial.id, "suspicious", actor="ops")
    assert flagged.flagged is True
    assert flagged.stage == TrialStage.ANONYMOUS

    unflagged = service.unflag(trial.id, actor="ops")
    assert unflagged.flagged is False
    assert unflagged.flag_reason is None

    events = list_trial_events(db_session, trial.id)
    assert {event.action for event in events} == {"trial.created", "trial.flagged", "trial.unflagged"}
    assert {event.actor for event in events if event.action != "trial.created"} == {"ops"}


def test_flag_unknown_trial(db_session):
    with pytest.raises(TrialNotFoundError):
        TrialLifecycleService(db_session).flag(uuid.uuid4(), "nope", actor="ops")


def test_status_is_derived_from_expiry(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)

    fresh = compute_status(trial, now=now)
    assert fresh.days_remaining == 7
    assert fresh.can_extend is True
    assert fresh.is_expiring_soon is False

    soon = compute_status(trial, now=now + timedelta(days=5))
    assert soon.days_remaining == 2
    assert soon.is_expiring_soon is True

    lapsed = compute_status(trial, now=now + timedelta(days=7, seconds=1))
    assert lapsed.stage == TrialStage.EXPIRED
    assert lapsed.stored_stage == TrialStage.ANONYMOUS
    assert lapsed.is_expired is True
    assert lapsed.can_extend is False
    assert lapsed.days_remaining == 0


def test_days_remaining_never_negative(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)

    for offset in (0, 3, 7, 8, 30, 365):
        assert compute_status(trial, now=now + timedelta(days=offset)).days_remaining >= 0


def test_expire_overdue_persists_expired_stage(db_session, now):
    service = TrialLifecycleService(db_session)
    old = service.create("dev-old", now=now - timedelta(days=10))
    fresh = service.create("dev-new", now=now)

    assert service.expire_overdue(now=now) == 1

    store = TrialStore(db_session)
    assert store.get(old.id).stage == TrialStage.EXPIRED
    assert store.get(fresh.id).stage == TrialStage.ANONYMOUS
    assert service.expire_overdue(now=now) == 0


def test_scenario_concurrent_extend_single_winner(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)

    class RacingStore(TrialStore):
        raced = False

        def transition(self, trial_id, expected_stage, values, *, extra_guards=()):
            if not self.raced:
                self.raced = True
                TrialLifecycleService(self.session).extend(trial_id, "gh-B", "bob", None, now=now)
            return super().transition(trial_id, expected_stage, values, extra_guards=extra_guards)

    loser = TrialLifecycleService(db_session, store=RacingStore(db_session))
    with pytest.raises(AlreadyExtendedError):
        loser.extend(trial.id, "gh-A", "alice", None, now=now)

    record = TrialStore(db_session).get(trial.id)
    assert record.stage == TrialStage.EXTENDED
    assert record.external_id == "gh-B"


def test_repeated_guard_loss_surfaces_conflict(db_session, now):
    trial = TrialLifecycleService(db_session).create("dev-1", now=now)

    class AlwaysLosingStore(TrialStore):
        def transition(self, trial_id, expected_stage, values, *, extra_guards=()):
            return GuardedUpdateResult(applied=False, record=self.get(trial_id))

    before = _transition_count("force_expire", "trial.conflicting_transition")
    with pytest.raises(ConflictingTransitionError):
        TrialLifecycleService(db_session, store=AlwaysLosingStore(db_session)).force_expire(
            trial.id, actor="ops", now=now
        )

    assert TrialStore(db_session).get(trial.id).stage == TrialStage.ANONYMOUS
    assert _transition_count("force_expire", "trial.conflicting_transition") == before + 1
