from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from grundy.data.vendors import default_vendor_registry
from grundy.integrations.common import GatewayError, IntegrationDisabledError, IntegrationMisconfiguredError
from grundy.services.order_reconciler import OutcomeCode
from grundy.services.order_store import (
    PaymentMethod,
    StoreCode,
    generate_order_reference,
    normalize_payment_method,
    normalize_status,
)
from grundy.services.payout_splitter import cart_line_from_item, should_use_split_payment
from grundy.services.store_factory import current_order_store, current_payments_provider, current_reconciler
from grundy.segments.segment_payments import integration_error, split_cart_or_error
from grundy.utils.api import api_error, first_value, json_body, store_error
from grundy.utils.commission import money_json, to_decimal
from grundy.utils.observability import bind_order_context
from grundy.utils.settings import get_settings

orders_api_bp = Blueprint("orders_api_bp", __name__, url_prefix="/api/orders")

TEST_VIRTUAL_ACCOUNT = {
    "bank_name": "Paystack Test Bank",
    "account_number": "1230001644",
}

OUTCOME_HTTP = {
    OutcomeCode.APPLIED: 200,
    OutcomeCode.UNCHANGED: 200,
    OutcomeCode.IGNORED: 200,
    OutcomeCode.UNRESOLVED: 404,
    OutcomeCode.INVALID_TRANSITION: 409,
    OutcomeCode.MALFORMED: 400,
    OutcomeCode.ERROR: 500,
}


def _order_payload(data: dict) -> tuple[str, str, str]:
    email = str(first_value(data, "email", "customer_email", "customerEmail", default="")).strip().lower()
    name = str(first_value(data, "customer_name", "customerName", default="")).strip()
    reference = str(first_value(data, "order_reference", "orderReference", default="")).strip()
    return email, name, reference


def _amount_mismatch(data: dict, split):
    client_amount = first_value(data, "amount")
    if client_amount is not None and to_decimal(client_amount, default="-1") != split.order_total:
        return api_error(
            "AMOUNT_MISMATCH",
            "amount does not match the cart total",
            400,
            expected=money_json(split.order_total),
        )
    return None


@orders_api_bp.post("/bank-transfer-delivery")
def create_bank_transfer_order():
    data = json_body()
    email, name, reference = _order_payload(data)
    items = first_value(data, "items", "cartItems")
    if not email or not items:
        return api_error("BAD_REQUEST", "email and items are required", 400)
    split, err = split_cart_or_error(items)
    if err:
        return err
    err = _amount_mismatch(data, split)
    if err:
        return err

    settings = get_settings()
    reference = reference or generate_order_reference()
    bind_order_context(reference)
    multi_vendor = should_use_split_payment(split)
    if current_order_store().get(reference) is not None:
        return api_error(StoreCode.DUPLICATE_REFERENCE, f"order {reference} already exists", 409)
    try:
        provider = current_payments_provider()
        if multi_vendor and not settings.paystack_split_code:
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SPLIT_CODE")
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        return integration_error(e)

    try:
        customer = provider.create_customer(
            email=email,
            first_name=name or email.split("@")[0],
            metadata={"order_reference": reference, "vendor_count": split.vendor_count},
        )
    except GatewayError as e:
        current_app.logger.error("bank_transfer_customer_failed reference=%s err=%s", reference, e)
        return api_error(e.code, str(e), 502)

    if multi_vendor:
        routing = {"split_code": settings.paystack_split_code}
    else:
        vendor = default_vendor_registry().get(split.vendor_payouts[0].vendor_id)
        routing = {"subaccount": vendor.subaccount_code}

    try:
        dva = provider.create_dedicated_account(
            customer_code=customer.customer_code,
            preferred_bank="wema-bank" if settings.is_production else "test-bank",
            **routing,
        )
        account = {"bank_name": dva.bank_name, "account_number": dva.account_number, "account_name": dva.account_name}
        test_account = False
    except GatewayError as e:
        if settings.is_production:
            current_app.logger.error("bank_transfer_dva_failed reference=%s err=%s", reference, e)
            return api_error(e.code, str(e), 502)
        current_app.logger.warning("bank_transfer_dva_fallback reference=%s err=%s", reference, e)
        account = {
            **TEST_VIRTUAL_ACCOUNT,
            "account_name": f"GRUNDY/{(name or 'customer').upper()}",
        }
        test_account = True

    created = current_order_store().create(
        {
            "order_reference": reference,
            "customer_email": email,
            "customer_name": name,
            "delivery_address": first_value(data, "delivery_address", "deliveryAddress"),
            "amount": split.order_total,
            "items": [cart_line_from_item(item).to_dict() for item in items],
            "payment_method": PaymentMethod.BANK_TRANSFER_ON_DELIVERY,
            "vendor_payouts": [p.to_dict() for p in split.vendor_payouts],
            "virtual_account_number": account["account_number"],
        }
    )
    if not created.ok:
        return store_error(created)

    return jsonify(
        {
            "ok": True,
            "order": created.order.to_dict(),
            "virtual_account": {
                **account,
                "amount": money_json(split.order_total),
                "reference": reference,
                "customer_code": customer.customer_code,
                "split_configuration": "split" if multi_vendor else "subaccount",
                "test_account": test_account,
            },
            "order_split": split.to_dict(),
        }
    ), 201


@orders_api_bp.post("/terminal-delivery")
def create_terminal_order():
    data = json_body()
    email, name, reference = _order_payload(data)
    items = first_value(data, "items", "cartItems")
    if not email or not items:
        return api_error("BAD_REQUEST", "email and items are required", 400)
    split, err = split_cart_or_error(items)
    if err:
        return err
    err = _amount_mismatch(data, split)
    if err:
        return err

    created = current_order_store().create(
        {
            "order_reference": reference,
            "customer_email": email,
            "customer_name": name,
            "delivery_address": first_value(data, "delivery_address", "deliveryAddress"),
            "amount": split.order_total,
            "items": [cart_line_from_item(item).to_dict() for item in items],
            "payment_method": PaymentMethod.TERMINAL_ON_DELIVERY,
            "vendor_payouts": [p.to_dict() for p in split.vendor_payouts],
        }
    )
    if not created.ok:
        return store_error(created)
    bind_order_context(created.order.order_reference)
    return jsonify({"ok": True, "order": created.order.to_dict(), "order_split": split.to_dict()}), 201


@orders_api_bp.get("")
def list_orders():
    method_raw = (request.args.get("paymentMethod") or request.args.get("payment_method") or "").strip()
    status_raw = (request.args.get("status") or "").strip()
    store = current_order_store()

    if method_raw:
        method = normalize_payment_method(method_raw)
        if method is None:
            return api_error("BAD_REQUEST", f"unknown payment method {method_raw}", 400)
        orders = store.list_by_payment_method(method)
    else:
        orders = store.list()
    if status_raw:
        status = normalize_status(status_raw)
        if status is None:
            return api_error("BAD_REQUEST", f"unknown status {status_raw}", 400)
        orders = [o for o in orders if o.payment_status == status]
    return jsonify({"ok": True, "count": len(orders), "orders": [o.to_dict() for o in orders]})


@orders_api_bp.get("/<reference>")
def get_order(reference):
    bind_order_context(reference)
    order = current_order_store().get(reference)
    if order is None:
        return api_error("NOT_FOUND", f"order {reference} not found", 404)
    return jsonify({"ok": True, "order": order.to_dict()})


@orders_api_bp.post("/update-payment-status")
def update_payment_status():
    data = json_body()
    reference = str(first_value(data, "orderReference", "order_reference", default="")).strip()
    status = str(first_value(data, "status", default="")).strip()
    if not reference or not status:
        return api_error("BAD_REQUEST", "orderReference and status are required", 400)
    bind_order_context(reference)
    payment_data = first_value(data, "paymentData", "payment_data", default={})
    if not isinstance(payment_data, dict):
        return api_error("BAD_REQUEST", "paymentData must be an object", 400)

    outcome = current_reconciler().apply_status_update(reference, status, payment_data, source="manual")
    http_status = OUTCOME_HTTP.get(outcome.code, 400)
    order = current_order_store().get(outcome.order_reference or reference)
    if http_status >= 400:
        return api_error(
            outcome.code,
            outcome.message or outcome.code,
            http_status,
            outcome=outcome.to_dict(),
            order=order.to_dict() if order else None,
        )
    return jsonify({"ok": True, "outcome": outcome.to_dict(), "order": order.to_dict() if order else None})
