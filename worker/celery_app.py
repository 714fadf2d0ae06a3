from datetime import timedelta

from celery import Celery
from kombu import Queue

from core.env import env_int, env_str

CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "trials") or "trials"
TRIAL_EXPIRE_SWEEP_MINUTES = env_int("TRIAL_EXPIRE_SWEEP_MINUTES", 15, minimum=1)

app = Celery(
    "trials",
    broker=env_str("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1"),
    include=["worker.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    task_routes={"trial.*": {"queue": CELERY_DEFAULT_QUEUE}},
    beat_schedule={
        "trial-expire-overdue": {
            "task": "trial.expire_overdue",
            "schedule": timedelta(minutes=TRIAL_EXPIRE_SWEEP_MINUTES),
        },
    },
)
app.conf.enable_utc = str(CELERY_TIMEZONE).upper() == "UTC"
