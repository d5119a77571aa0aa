"""Simulated terminal payment confirmation.

No terminal hardware is involved: once a rider starts collection, a
``charge.success`` notification on the ``terminal`` channel is produced after a
delay and fed to the reconciler like any gateway webhook. The delay runs on
Celery when ``TERMINAL_CONFIRM_QUEUE`` is on, otherwise on a daemon timer
inside the app context. Either way the caller gets a handle it can cancel.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime

from flask import current_app

from grundy.services.order_reconciler import ReconcileOutcome
from grundy.services.store_factory import current_reconciler
from grundy.utils.commission import money_major_to_minor

logger = logging.getLogger(__name__)


def build_terminal_confirmation_event(order_reference: str, terminal_id: str, amount, customer_email: str = "") -> dict:
    return {
        "event": "charge.success",
        "data": {
            "reference": order_reference,
            "amount": money_major_to_minor(amount),
            "channel": "terminal",
            "status": "success",
            "paid_at": datetime.utcnow().isoformat(),
            "customer": {"email": customer_email},
            "metadata": {
                "orderReference": order_reference,
                "terminal_id": terminal_id,
                "simulated_payment": True,
            },
        },
    }


def confirm_terminal_payment(order_reference: str, terminal_id: str, amount, customer_email: str = "") -> ReconcileOutcome:
    event = build_terminal_confirmation_event(order_reference, terminal_id, amount, customer_email)
    outcome = current_reconciler().reconcile_payment_event(event, source="terminal_simulation")
    logger.info(
        "terminal_confirmation_applied reference=%s terminal=%s code=%s",
        order_reference, terminal_id, outcome.code,
    )
    return outcome


CONFIRMATIONS_EXTENSION_KEY = "grundy_terminal_confirmations"

# celery states after which revoking no longer stops the payment
_CELERY_STARTED_STATES = {"STARTED", "RETRY", "SUCCESS", "FAILURE"}
# queued handles whose state cannot be read are dropped this long after due
QUEUE_HANDLE_GRACE_SECONDS = 300


class ScheduledConfirmation:
    """Handle over a pending confirmation.

    ``cancel()`` returns False once the confirmation has started; for Celery
    that is read from the task state, for the timer it is exact.
    """

    def __init__(
        self,
        order_reference: str,
        *,
        mode: str,
        delay_seconds: float = 0.0,
        timer: threading.Timer | None = None,
        async_result=None,
    ):
        self.order_reference = order_reference
        self.mode = mode
        self.due_at = time.monotonic() + max(0.0, float(delay_seconds))
        self._timer = timer
        self._async_result = async_result
        self._lock = threading.Lock()
        self.cancelled = False
        self.fired = False

    @property
    def task_id(self) -> str:
        return str(getattr(self._async_result, "id", "") or "")

    def _task_state(self) -> str:
        try:
            return str(self._async_result.state or "")
        except Exception as e:
            logger.info("terminal_confirmation_state_unavailable reference=%s err=%s", self.order_reference, e)
            return ""

    def claim(self) -> bool:
        """Mark the confirmation as running; False when it was cancelled first."""
        with self._lock:
            if self.cancelled:
                return False
            self.fired = True
            return True

    @property
    def done(self) -> bool:
        if self.cancelled or self.fired:
            return True
        if self._async_result is not None:
            if self._task_state() in _CELERY_STARTED_STATES:
                return True
            return time.monotonic() > self.due_at + QUEUE_HANDLE_GRACE_SECONDS
        return False

    def cancel(self) -> bool:
        with self._lock:
            if self.cancelled:
                return True
            if self.fired or (self._async_result is not None and self._task_state() in _CELERY_STARTED_STATES):
                self.fired = True
                logger.info("terminal_confirmation_cancel_too_late reference=%s mode=%s", self.order_reference, self.mode)
                return False
            if self._timer is not None:
                self._timer.cancel()
            if self._async_result is not None:
                self._async_result.revoke()
            self.cancelled = True
        logger.info("terminal_confirmation_cancelled reference=%s mode=%s", self.order_reference, self.mode)
        return True

    def join(self, timeout: float | None = None) -> None:
        if self._timer is not None:
            self._timer.join(timeout)

    def to_dict(self) -> dict:
        return {"order_reference": self.order_reference, "mode": self.mode, "task_id": self.task_id}


class ConfirmationRegistry:
    """Pending confirmations by order reference; finished handles are dropped."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: dict[str, ScheduledConfirmation] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, order_reference) -> bool:
        with self._lock:
            return order_reference in self._pending

    def add(self, handle: ScheduledConfirmation) -> None:
        with self._lock:
            for reference in [r for r, h in self._pending.items() if h.done]:
                del self._pending[reference]
            self._pending[handle.order_reference] = handle

    def pop(self, order_reference: str) -> ScheduledConfirmation | None:
        with self._lock:
            return self._pending.pop(order_reference, None)

    def discard(self, handle: ScheduledConfirmation) -> None:
        with self._lock:
            if self._pending.get(handle.order_reference) is handle:
                del self._pending[handle.order_reference]


def confirmation_registry(app=None) -> ConfirmationRegistry:
    app = app or current_app._get_current_object()
    return app.extensions.setdefault(CONFIRMATIONS_EXTENSION_KEY, ConfirmationRegistry())


def _timer_confirmation(app, handle, terminal_id, amount, customer_email):
    with app.app_context():
        try:
            if not handle.claim():
                return
            confirm_terminal_payment(handle.order_reference, terminal_id, amount, customer_email)
        except Exception:
            # nowhere to report from a timer thread
            app.logger.exception("terminal_confirmation_failed reference=%s", handle.order_reference)
        finally:
            confirmation_registry(app).discard(handle)


def schedule_terminal_confirmation(
    order_reference: str,
    terminal_id: str,
    amount,
    *,
    customer_email: str = "",
    delay_seconds: float = 2,
    use_queue: bool = False,
    trace_id: str = "",
) -> ScheduledConfirmation:
    app = current_app._get_current_object()
    registry = confirmation_registry(app)
    if use_queue:
        try:
            from grundy.tasks.scale_tasks import confirm_terminal_payment_task

            result = confirm_terminal_payment_task.apply_async(
                kwargs={
                    "order_reference": order_reference,
                    "terminal_id": terminal_id,
                    "amount": str(amount),
                    "customer_email": customer_email,
                    "trace_id": trace_id,
                },
                countdown=max(0, int(delay_seconds)),
            )
            logger.info("terminal_confirmation_queued reference=%s delay=%s", order_reference, delay_seconds)
            handle = ScheduledConfirmation(
                order_reference, mode="celery", delay_seconds=delay_seconds, async_result=result
            )
            registry.add(handle)
            return handle
        except Exception as e:
            logger.warning("terminal_confirmation_queue_failed reference=%s err=%s", order_reference, e)

    handle = ScheduledConfirmation(order_reference, mode="timer", delay_seconds=delay_seconds)
    timer = threading.Timer(
        max(0.0, float(delay_seconds)),
        _timer_confirmation,
        args=(app, handle, terminal_id, str(amount), customer_email),
    )
    timer.daemon = True
    handle._timer = timer
    registry.add(handle)
    timer.start()
    logger.info("terminal_confirmation_scheduled reference=%s delay=%s", order_reference, delay_seconds)
    return handle
