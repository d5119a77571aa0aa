from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from grundy.data.vendors import default_vendor_registry
from grundy.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from grundy.services.order_store import PaymentStatus
from grundy.services.store_factory import current_order_store, current_payments_provider
from grundy.services.vendor_payout_service import aggregate_vendor_payouts, process_vendor_payouts
from grundy.segments.segment_payments import integration_error
from grundy.utils.api import api_error, first_value, json_body
from grundy.utils.observability import bind_order_context

vendors_bp = Blueprint("vendors_bp", __name__, url_prefix="/api/vendors")


@vendors_bp.get("")
def list_vendors():
    return jsonify({"ok": True, "vendors": [v.to_dict() for v in default_vendor_registry().all()]})


@vendors_bp.get("/orders")
def vendor_orders():
    orders = current_order_store().list()
    return jsonify(
        {
            "ok": True,
            "orders": [o.to_dict() for o in orders],
            "vendor_payouts": aggregate_vendor_payouts(orders),
        }
    )


@vendors_bp.post("/payouts")
def pay_vendors():
    data = json_body()
    reference = str(first_value(data, "orderReference", "order_reference", "order_id", default="")).strip()
    if not reference:
        return api_error("BAD_REQUEST", "orderReference is required", 400)
    bind_order_context(reference)
    order = current_order_store().get(reference)
    if order is None:
        return api_error("NOT_FOUND", f"order {reference} not found", 404)
    if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.DELIVERED):
        return api_error("INVALID_TRANSITION", "order has not been paid", 409, order=order.to_dict())
    try:
        provider = current_payments_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        return integration_error(e)

    results = process_vendor_payouts(order, provider)
    failed = [r for r in results if not r.success]
    current_app.logger.info(
        "vendor_payouts_processed reference=%s vendors=%s failed=%s", reference, len(results), len(failed)
    )
    return jsonify(
        {
            "ok": not failed,
            "order_reference": reference,
            "payouts": [r.to_dict() for r in results],
        }
    ), (200 if not failed else 502)
