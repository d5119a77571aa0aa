from __future__ import annotations

import hashlib
import json
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from grundy.extensions import db
from grundy.models import WebhookEvent
from grundy.services.order_reconciler import OutcomeCode
from grundy.services.store_factory import current_reconciler
from grundy.utils.observability import bind_order_context, get_request_id
from grundy.utils.paystack_client import verify_signature
from grundy.utils.settings import get_settings

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def webhook_event_id(payload: dict) -> str:
    """Stable id for replay detection: the gateway's own id when it sends one."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    event = str(payload.get("event") or "").strip()
    explicit = str(payload.get("id") or payload.get("event_id") or "").strip()
    if explicit:
        return explicit[:128]
    if data.get("id") not in (None, ""):
        return f"{event}:{data.get('id')}"[:128]
    base = f"{event}:{data.get('reference', '')}:{data.get('amount', '')}:{data.get('status', '')}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()[:64]


def _record_receipt(payload: dict, raw: bytes, event_id: str) -> tuple[WebhookEvent | None, bool]:
    """(row, replayed). A row already processed short-circuits the request."""
    existing = WebhookEvent.query.filter_by(provider="paystack", event_id=event_id).first()
    if existing is not None:
        return existing, existing.status == "processed"
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    row = WebhookEvent(
        provider="paystack",
        event_id=event_id,
        event_type=str(payload.get("event") or "")[:64],
        reference=str(data.get("reference") or "")[:128] or None,
        status="received",
        request_id=get_request_id()[:64] or None,
        payload_hash=hashlib.sha256(raw or b"").hexdigest(),
        payload_json=json.dumps(payload, default=str)[:20000],
        created_at=datetime.utcnow(),
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        # concurrent delivery of the same event
        db.session.rollback()
        existing = WebhookEvent.query.filter_by(provider="paystack", event_id=event_id).first()
        return existing, True
    return row, False


def process_paystack_webhook(*, payload: dict, event_id: str, source: str = "api/webhooks/paystack") -> tuple[dict, int]:
    """Reconcile one verified webhook payload and record the outcome on its
    ``webhook_events`` row. Always answers 200 so the gateway stops retrying."""
    outcome = current_reconciler().reconcile_payment_event(payload, source=source)
    bind_order_context(outcome.order_reference or "", event_id=event_id)
    try:
        row = WebhookEvent.query.filter_by(provider="paystack", event_id=event_id).first()
        if row is not None:
            row.status = "failed" if outcome.code == OutcomeCode.ERROR else "processed"
            row.outcome_code = outcome.code
            row.order_reference = outcome.order_reference
            row.processed_at = datetime.utcnow()
            row.error = outcome.message if not outcome.ok else None
            db.session.add(row)
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("webhook_event_update_failed event_id=%s", event_id)
    current_app.logger.info(
        "paystack_webhook_processed event_id=%s code=%s reference=%s strategy=%s",
        event_id, outcome.code, outcome.order_reference, outcome.strategy,
    )
    return {"ok": True, "event_id": event_id, "code": outcome.code, "outcome": outcome.to_dict()}, 200


def mark_webhook_event_failed(event_id: str, error: str) -> bool:
    """Record a queued delivery that exhausted its retries; the next gateway
    retry of the same event is then processed again."""
    try:
        row = WebhookEvent.query.filter_by(provider="paystack", event_id=event_id).first()
        if row is None or row.status == "processed":
            return False
        row.status = "failed"
        row.outcome_code = OutcomeCode.ERROR
        row.error = (error or "")[:2000] or None
        row.processed_at = datetime.utcnow()
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("webhook_event_mark_failed_error event_id=%s", event_id)
        return False
    current_app.logger.warning("webhook_event_failed event_id=%s err=%s", event_id, error)
    return True


@webhooks_bp.post("/paystack")
def paystack_webhook():
    raw = request.get_data() or b""
    signature = request.headers.get("X-Paystack-Signature")
    settings = get_settings()

    secret = settings.webhook_secret
    if secret:
        if not verify_signature(raw, signature, secret):
            current_app.logger.warning("paystack_webhook_bad_signature request_id=%s", get_request_id())
            return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "trace_id": get_request_id()}), 401
    elif settings.is_production:
        current_app.logger.error("paystack_webhook_secret_missing")
        return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "trace_id": get_request_id()}), 401
    else:
        current_app.logger.warning("paystack_webhook_unsigned_accepted env=%s", settings.env)

    try:
        payload = json.loads(raw.decode("utf-8") or "null")
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        current_app.logger.warning("paystack_webhook_malformed request_id=%s", get_request_id())
        return jsonify({"ok": True, "code": OutcomeCode.MALFORMED, "trace_id": get_request_id()}), 200

    event_id = webhook_event_id(payload)
    bind_order_context(event_id=event_id)
    try:
        _row, replayed = _record_receipt(payload, raw, event_id)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("webhook_event_record_failed event_id=%s", event_id)
        replayed = False
    if replayed:
        current_app.logger.info("paystack_webhook_replayed event_id=%s", event_id)
        return jsonify({"ok": True, "replayed": True, "event_id": event_id, "trace_id": get_request_id()}), 200

    if settings.webhook_queue_enabled:
        try:
            from grundy.tasks.scale_tasks import process_paystack_webhook_task

            process_paystack_webhook_task.delay(
                payload=payload,
                event_id=event_id,
                source="api/webhooks/paystack:queued",
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "event_id": event_id, "trace_id": get_request_id()}), 200
        except Exception as e:
            # broker unavailable: fall through to inline processing
            current_app.logger.warning("paystack_webhook_queue_failed event_id=%s err=%s", event_id, e)

    body, status = process_paystack_webhook(payload=payload, event_id=event_id)
    body["trace_id"] = get_request_id()
    return jsonify(body), status
