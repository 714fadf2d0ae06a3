"""Celery tasks for trial housekeeping."""

from __future__ import annotations

import logging
from typing import Dict

from celery import shared_task

import database
from core.env import env_int
from services.trial_service import TrialLifecycleService

logger = logging.getLogger(__name__)

TRIAL_EXPIRE_BATCH_SIZE = env_int("TRIAL_EXPIRE_BATCH_SIZE", 500, minimum=1)


def expire_overdue_trials(*, batch_size: int = TRIAL_EXPIRE_BATCH_SIZE, max_batches: int = 20) -> Dict[str, int]:
    """Persist ``expired`` for lapsed trials in bounded batches."""
    total = 0
    batches = 0
    with database.session_scope() as db:
        service = TrialLifecycleService(db)
        while batches < max_batches:
            count = service.expire_overdue(limit=batch_size)
            batches += 1
            total += count
            if count < batch_size:
                break
    if total:
        logger.info("Expired %d overdue trials in %d batch(es).", total, batches)
    return {"expired": total, "batches": batches}


@shared_task(name="trial.expire_overdue")
def expire_overdue() -> Dict[str, int]:
    return expire_overdue_trials()
