from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from grundy.data.riders import find_rider
from grundy.services.order_store import PaymentMethod, PaymentStatus
from grundy.services.store_factory import current_order_store, current_reconciler
from grundy.services.terminal_confirmation import confirmation_registry, schedule_terminal_confirmation
from grundy.utils.api import api_error, first_value, json_body, store_error
from grundy.utils.observability import bind_order_context, get_request_id
from grundy.utils.settings import get_settings

rider_bp = Blueprint("rider_bp", __name__, url_prefix="/api")


@rider_bp.post("/rider/dispatch")
def dispatch_rider():
    data = json_body()
    reference = str(first_value(data, "order_id", "orderReference", "order_reference", default="")).strip()
    rider_id = str(first_value(data, "rider_id", "riderId", default="")).strip()
    if not reference or not rider_id:
        return api_error("BAD_REQUEST", "order_id and rider_id are required", 400)
    rider = find_rider(rider_id)
    if rider is None:
        return api_error("RIDER_NOT_FOUND", f"rider {rider_id} not found", 404)
    bind_order_context(reference, rider_id=rider_id, terminal_id=rider["terminal_id"])

    result = current_reconciler().assign_rider(reference, rider["id"], rider["terminal_id"])
    if not result.ok:
        return store_error(result)
    return jsonify({"ok": True, "changed": result.changed, "order": result.order.to_dict(), "rider": rider})


@rider_bp.post("/terminal/collect-payment")
def collect_terminal_payment():
    data = json_body()
    reference = str(first_value(data, "order_id", "orderReference", "order_reference", default="")).strip()
    terminal_id = str(first_value(data, "terminal_id", "terminalId", default="")).strip()
    if not reference or not terminal_id:
        return api_error("BAD_REQUEST", "order_id and terminal_id are required", 400)
    bind_order_context(reference, terminal_id=terminal_id)

    order = current_order_store().get(reference)
    if order is None:
        return api_error("NOT_FOUND", f"order {reference} not found", 404)
    if order.payment_status != PaymentStatus.PENDING:
        return api_error("INVALID_TRANSITION", "order is not awaiting payment", 409, order=order.to_dict())
    if order.payment_method != PaymentMethod.TERMINAL_ON_DELIVERY:
        current_app.logger.warning(
            "terminal_collect_unexpected_method reference=%s method=%s", reference, order.payment_method
        )

    settings = get_settings()
    handle = schedule_terminal_confirmation(
        order.order_reference,
        terminal_id,
        order.amount,
        customer_email=order.customer_email,
        delay_seconds=settings.terminal_confirm_delay_seconds,
        use_queue=settings.terminal_confirm_queue_enabled,
        trace_id=get_request_id(),
    )
    return jsonify(
        {
            "ok": True,
            "order": order.to_dict(),
            "terminal_id": terminal_id,
            "confirmation": handle.to_dict(),
            "simulated": True,
            "delay_seconds": settings.terminal_confirm_delay_seconds,
        }
    ), 202


@rider_bp.post("/rider/complete-delivery")
def complete_delivery():
    data = json_body()
    reference = str(first_value(data, "order_id", "orderReference", "order_reference", default="")).strip()
    if not reference:
        return api_error("BAD_REQUEST", "order_id is required", 400)
    bind_order_context(reference)
    result = current_reconciler().complete_delivery(reference)
    if not result.ok:
        return store_error(result)
    return jsonify({"ok": True, "changed": result.changed, "order": result.order.to_dict()})


@rider_bp.post("/terminal/cancel-collection")
def cancel_terminal_collection():
    data = json_body()
    reference = str(first_value(data, "order_id", "orderReference", "order_reference", default="")).strip()
    if not reference:
        return api_error("BAD_REQUEST", "order_id is required", 400)
    bind_order_context(reference)
    handle = confirmation_registry().pop(reference)
    order = current_order_store().get(reference)
    if handle is None or not handle.cancel():
        if order is not None and order.payment_status != PaymentStatus.PENDING:
            return api_error(
                "INVALID_TRANSITION", "terminal payment already confirmed", 409, order=order.to_dict()
            )
        if handle is None:
            return api_error("NOT_FOUND", f"no pending collection for {reference}", 404)
        return api_error("INVALID_TRANSITION", "terminal payment already in progress", 409)
    return jsonify({"ok": True, "cancelled": True, "order": order.to_dict() if order else None})
