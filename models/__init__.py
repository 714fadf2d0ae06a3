from .trial import TrialAuditEvent, TrialRecord  # noqa: F401
