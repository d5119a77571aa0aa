from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from grundy.integrations.common import GatewayError, IntegrationDisabledError, IntegrationMisconfiguredError
from grundy.services.order_store import PaymentMethod, PaymentStatus
from grundy.services.payout_splitter import (
    InvalidCartError,
    UnknownVendorError,
    calculate_split,
    cart_line_from_item,
)
from grundy.services.split_config_service import build_gateway_split_config
from grundy.services.store_factory import current_order_store, current_payments_provider, current_reconciler
from grundy.utils.api import api_error, first_value, json_body, store_error
from grundy.utils.commission import money_json, to_decimal
from grundy.utils.observability import bind_order_context
from grundy.utils.settings import get_settings

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")


def split_cart_or_error(items):
    """(split, None) or (None, error response) for a cart payload."""
    try:
        return calculate_split(items, fees=get_settings().fees), None
    except UnknownVendorError as e:
        return None, api_error("UNKNOWN_VENDOR", str(e), 400, vendor_id=e.vendor_id)
    except InvalidCartError as e:
        return None, api_error("INVALID_CART", str(e), 400)


def integration_error(e: Exception):
    code = "INTEGRATION_DISABLED" if isinstance(e, IntegrationDisabledError) else "INTEGRATION_MISCONFIGURED"
    current_app.logger.warning("payments_integration_unavailable code=%s detail=%s", code, e)
    return api_error(code, str(e), 503)


@payments_bp.post("/initialize")
def initialize_payment():
    data = json_body()
    email = str(first_value(data, "email", "customer_email", "customerEmail", default="")).strip().lower()
    items = first_value(data, "items", "cartItems", "cart_items")
    if not email or not items:
        return api_error("BAD_REQUEST", "email and items are required", 400)

    split, err = split_cart_or_error(items)
    if err:
        return err
    client_amount = first_value(data, "amount")
    if client_amount is not None and to_decimal(client_amount, default="-1") != split.order_total:
        return api_error(
            "AMOUNT_MISMATCH",
            "amount does not match the cart total",
            400,
            expected=money_json(split.order_total),
        )

    settings = get_settings()
    try:
        provider = current_payments_provider()
        split_config = build_gateway_split_config(split, platform_subaccount=settings.paystack_platform_subaccount)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        return integration_error(e)
    except InvalidCartError as e:
        return api_error("INVALID_CART", str(e), 400)

    store = current_order_store()
    created = store.create(
        {
            "order_reference": first_value(data, "order_reference", "orderReference", default=""),
            "customer_email": email,
            "customer_name": first_value(data, "customer_name", "customerName", default=""),
            "delivery_address": first_value(data, "delivery_address", "deliveryAddress"),
            "amount": split.order_total,
            "items": [cart_line_from_item(item).to_dict() for item in items],
            "payment_method": PaymentMethod.PREPAY,
            "vendor_payouts": [p.to_dict() for p in split.vendor_payouts],
        }
    )
    if not created.ok:
        return store_error(created)
    order = created.order
    bind_order_context(order.order_reference)

    try:
        init = provider.initialize(
            amount=split.order_total,
            email=email,
            reference=order.order_reference,
            metadata={
                "orderReference": order.order_reference,
                "paymentMethod": PaymentMethod.PREPAY,
                "vendorCount": split.vendor_count,
                "splitKind": split_config.kind,
            },
            split_config=split_config.to_paystack(),
        )
    except GatewayError as e:
        store.transition_payment(
            order.order_reference,
            PaymentStatus.FAILED,
            {"error": e.code, "message": str(e)},
            source="initialize",
        )
        current_app.logger.error("payment_initialize_failed reference=%s err=%s", order.order_reference, e)
        return api_error(e.code, str(e), 502, order_reference=order.order_reference)

    current_app.logger.info(
        "payment_initialized reference=%s vendors=%s config=%s",
        order.order_reference, split.vendor_count, split_config.kind,
    )
    return jsonify(
        {
            "ok": True,
            "authorization_url": init.authorization_url,
            "access_code": init.access_code,
            "reference": init.reference,
            "provider": init.provider,
            "order": order.to_dict(),
            "order_split": split.to_dict(),
            "split_config": split_config.to_dict(),
        }
    ), 201


@payments_bp.get("/verify")
def verify_payment():
    reference = (request.args.get("reference") or "").strip()
    if not reference:
        return api_error("BAD_REQUEST", "reference is required", 400)
    bind_order_context(reference)
    try:
        result = current_payments_provider().verify(reference)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        return integration_error(e)
    except GatewayError as e:
        current_app.logger.error("payment_verify_failed reference=%s err=%s", reference, e)
        return api_error(e.code, str(e), 502)

    outcome = None
    if result.status == "success":
        data = result.data
        data.setdefault("reference", reference)
        outcome = current_reconciler().reconcile_payment_event(
            {"event": "charge.success", "data": data},
            source="verify",
        )
    order = current_order_store().get(outcome.order_reference) if outcome and outcome.order_reference else None
    return jsonify(
        {
            "ok": True,
            "reference": reference,
            "status": result.status,
            "amount": money_json(result.amount),
            "currency": result.currency,
            "outcome": outcome.to_dict() if outcome else None,
            "order": order.to_dict() if order else None,
        }
    )
