from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from grundy.services.terminal_confirmation import confirm_terminal_payment


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


WEBHOOK_TASK_NAME = "grundy.tasks.scale_tasks.process_paystack_webhook"
TERMINAL_TASK_NAME = "grundy.tasks.scale_tasks.confirm_terminal_payment"


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(
    bind=True,
    name=WEBHOOK_TASK_NAME,
    max_retries=5,
)
def process_paystack_webhook_task(
    self,
    *,
    payload: dict,
    event_id: str,
    source: str = "api/webhooks/paystack:queued",
    trace_id: str = "",
):
    started = time.perf_counter()
    from grundy.segments.segment_payment_webhooks import process_paystack_webhook

    try:
        body, code = process_paystack_webhook(
            payload=payload if isinstance(payload, dict) else {},
            event_id=event_id,
            source=source,
        )
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "process_paystack_webhook",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                event_id=event_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log(
            "process_paystack_webhook",
            status="failed",
            started_at=started,
            trace_id=trace_id,
            event_id=event_id,
            detail=str(exc),
        )
        raise

    if body.get("code") == "ERROR" and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "process_paystack_webhook",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            event_id=event_id,
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError("webhook_reconcile_error"), countdown=countdown)
    _task_log(
        "process_paystack_webhook",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        event_id=event_id,
        status_code=int(code),
        outcome=body.get("code"),
    )
    return {"ok": True, "event_id": event_id, "status_code": int(code), "body": body}


@shared_task(
    bind=True,
    name=TERMINAL_TASK_NAME,
    max_retries=3,
)
def confirm_terminal_payment_task(
    self,
    *,
    order_reference: str,
    terminal_id: str,
    amount: str,
    customer_email: str = "",
    trace_id: str = "",
):
    started = time.perf_counter()
    outcome = confirm_terminal_payment(order_reference, terminal_id, amount, customer_email)
    if outcome.code == "ERROR" and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "confirm_terminal_payment",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            order_reference=order_reference,
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError("terminal_confirmation_error"), countdown=countdown)
    _task_log(
        "confirm_terminal_payment",
        status="ok" if outcome.ok else "rejected",
        started_at=started,
        trace_id=trace_id,
        order_reference=order_reference,
        terminal_id=terminal_id,
        outcome=outcome.code,
    )
    return outcome.to_dict()
