from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry
from flask import g

from grundy.tasks.scale_tasks import TERMINAL_TASK_NAME, WEBHOOK_TASK_NAME
from grundy.utils.settings import env_int

# kwargs the order tasks carry that identify what they were working on
TASK_CONTEXT_KEYS = ("trace_id", "order_reference", "event_id", "terminal_id")

_SIGNALS_BOUND = False


def _broker_url() -> str:
    return (
        (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or broker_url
    )


def task_context(kwargs) -> dict:
    if not isinstance(kwargs, dict):
        return {}
    context = {}
    for key in TASK_CONTEXT_KEYS:
        value = str(kwargs.get(key) or "").strip()
        if value:
            context[key] = value
    return context


def _task_event(event: str, task_name: str, task_id: str, kwargs, **extra) -> dict:
    payload = {
        "event": event,
        "task_name": task_name,
        "task_id": str(task_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(task_context(kwargs))
    payload.update(extra)
    return payload


def handle_task_failure(flask_app, task_name: str, task_id: str, kwargs, exception, einfo=None) -> None:
    """Log a task that gave up and leave the order side consistent.

    A webhook delivery is marked failed so the gateway's next retry is not
    mistaken for a replay. A terminal confirmation leaves the order pending,
    so the rider has to start collection again.
    """
    payload = _task_event("celery_task_failure", task_name, task_id, kwargs, exception=str(exception or ""))
    if einfo is not None:
        payload["einfo"] = str(einfo)
    flask_app.logger.error(json.dumps(payload))

    context = task_context(kwargs)
    if task_name == WEBHOOK_TASK_NAME and context.get("event_id"):
        from grundy.segments.segment_payment_webhooks import mark_webhook_event_failed

        with flask_app.app_context():
            mark_webhook_event_failed(context["event_id"], str(exception or "task_failed"))
    elif task_name == TERMINAL_TASK_NAME and context.get("order_reference"):
        flask_app.logger.warning(
            "terminal_confirmation_abandoned reference=%s terminal=%s",
            context["order_reference"], context.get("terminal_id", ""),
        )


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        task_name = getattr(sender, "name", "") if sender is not None else ""
        handle_task_failure(flask_app, task_name, task_id, kwargs, exception, einfo)

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = _task_event(
            "celery_task_retry",
            str(getattr(request, "task", "") or ""),
            str(getattr(request, "id", "") or ""),
            getattr(request, "kwargs", None),
            reason=str(reason or ""),
            retry_count=int(getattr(request, "retries", 0) or 0),
        )
        flask_app.logger.warning(json.dumps(payload))

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url()
    backend = _result_backend(broker)
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        # cancel-collection reads STARTED to tell a revoke from a late cancel
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        task_default_queue=(os.getenv("CELERY_QUEUE") or "grundy-orders").strip(),
        task_soft_time_limit=env_int("CELERY_TASK_SOFT_TIME_LIMIT", 60, minimum=5, maximum=3600),
        task_time_limit=env_int("CELERY_TASK_TIME_LIMIT", 90, minimum=10, maximum=3600),
        result_expires=env_int("CELERY_RESULT_EXPIRES_SECONDS", 86400, minimum=300, maximum=604800),
        timezone="UTC",
        enable_utc=True,
    )
    celery.conf.update({k: v for k, v in flask_app.config.items() if k.startswith("CELERY_") or k.startswith("task_")})

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                # log lines and webhook rows written by the task keep the caller's request id
                g.request_id = task_context(kwargs).get("trace_id", "")
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.set_default()
    celery.autodiscover_tasks(["grundy.tasks"], related_name="scale_tasks")
    _bind_task_observers(flask_app)
    return celery
