"""Resolve inbound payment/delivery notifications to one order and apply them.

Webhooks, manual status updates, client-side verification polling, rider
actions and the simulated terminal confirmation all end up here. Resolution
order is fixed:

1. order reference carried in the notification metadata,
2. gateway transaction reference already recorded on an order,
3. (customer email, amount) when exactly one order matches,
4. bank-transfer only: receiver virtual account when exactly one order matches.

``reconcile_payment_event`` never raises; every outcome comes back as a
``ReconcileOutcome`` and is logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from grundy.services.order_store import (
    OrderRecord,
    OrderStore,
    PaymentStatus,
    StoreCode,
    StoreResult,
    normalize_status,
)
from grundy.utils.commission import money_minor_to_major

logger = logging.getLogger(__name__)


class OutcomeCode:
    APPLIED = "APPLIED"
    UNCHANGED = "UNCHANGED"
    UNRESOLVED = "UNRESOLVED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    IGNORED = "IGNORED"
    MALFORMED = "MALFORMED"
    ERROR = "ERROR"


class Strategy:
    ORDER_REFERENCE = "order_reference"
    PAYMENT_REFERENCE = "payment_reference"
    GATEWAY_ORDER_REFERENCE = "gateway_order_reference"
    EMAIL_AMOUNT = "email_amount"
    VIRTUAL_ACCOUNT = "virtual_account"


EVENT_STATUS = {
    "charge.success": PaymentStatus.PAID,
    "paymentrequest.success": PaymentStatus.PAID,
    "charge.failed": PaymentStatus.FAILED,
    "invoice.payment_failed": PaymentStatus.FAILED,
    "refund.processed": PaymentStatus.REFUNDED,
    "paymentrequest.pending": PaymentStatus.PENDING,
}

BANK_CHANNELS = ("bank_transfer", "dedicated_nuban")


@dataclass
class ReconcileOutcome:
    ok: bool
    code: str
    order_reference: str | None = None
    applied_status: str | None = None
    strategy: str | None = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "code": self.code,
            "order_reference": self.order_reference,
            "applied_status": self.applied_status,
            "strategy": self.strategy,
            "message": self.message,
        }


@dataclass
class PaymentEvent:
    event_type: str
    status: str | None
    data: dict
    metadata_reference: str
    gateway_reference: str
    customer_email: str
    amount_minor: int | None
    channel: str
    receiver_account: str

    @classmethod
    def from_raw(cls, raw: dict) -> "PaymentEvent | None":
        if not isinstance(raw, dict):
            return None
        event_type = str(raw.get("event") or "").strip()
        data = raw.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return None
        status = normalize_status(raw.get("status")) if raw.get("status") else EVENT_STATUS.get(event_type)

        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
        authorization = data.get("authorization") if isinstance(data.get("authorization"), dict) else {}
        amount_raw = data.get("amount")
        try:
            amount_minor = int(amount_raw) if amount_raw is not None and amount_raw != "" else None
        except (TypeError, ValueError):
            amount_minor = None
        return cls(
            event_type=event_type,
            status=status,
            data=data,
            metadata_reference=str(
                metadata.get("orderReference") or metadata.get("order_reference") or ""
            ).strip(),
            gateway_reference=str(data.get("reference") or "").strip(),
            customer_email=str(customer.get("email") or "").strip().lower(),
            amount_minor=amount_minor,
            channel=str(data.get("channel") or "").strip().lower(),
            receiver_account=str(
                authorization.get("receiver_bank_account_number")
                or metadata.get("virtual_account_number")
                or metadata.get("account_number")
                or ""
            ).strip(),
        )


class OrderReconciler:
    def __init__(self, store: OrderStore):
        self.store = store

    # -- resolution -------------------------------------------------------

    def resolve(self, event: PaymentEvent) -> tuple[OrderRecord | None, str | None]:
        if event.metadata_reference:
            order = self.store.get(event.metadata_reference)
            if order is not None:
                return order, Strategy.ORDER_REFERENCE

        if event.gateway_reference:
            order = self.store.find_by_payment_reference(event.gateway_reference)
            if order is not None:
                return order, Strategy.PAYMENT_REFERENCE
            # Terminal and simulated confirmations reuse the order reference
            # as the transaction reference.
            order = self.store.get(event.gateway_reference)
            if order is not None:
                return order, Strategy.GATEWAY_ORDER_REFERENCE

        if event.customer_email and event.amount_minor is not None:
            amount = money_minor_to_major(event.amount_minor)
            candidates = self.store.find_by_email_amount(event.customer_email, amount)
            if len(candidates) == 1:
                return candidates[0], Strategy.EMAIL_AMOUNT
            if len(candidates) > 1:
                logger.warning(
                    "reconcile_ambiguous_email_amount email=%s amount=%s candidates=%s",
                    event.customer_email,
                    amount,
                    len(candidates),
                )

        if event.channel in BANK_CHANNELS and event.receiver_account:
            candidates = self.store.find_by_virtual_account(event.receiver_account)
            if len(candidates) == 1:
                return candidates[0], Strategy.VIRTUAL_ACCOUNT

        return None, None

    # -- entry points -----------------------------------------------------

    def reconcile_payment_event(self, raw_event: dict, *, source: str = "webhook") -> ReconcileOutcome:
        try:
            return self._reconcile(raw_event, source=source)
        except Exception as exc:
            logger.exception("reconcile_failed source=%s", source)
            return ReconcileOutcome(ok=False, code=OutcomeCode.ERROR, message=type(exc).__name__)

    def apply_status_update(
        self,
        order_reference: str,
        status: str,
        payment_data: dict | None = None,
        *,
        source: str = "manual",
    ) -> ReconcileOutcome:
        """Manual, simulated and polling updates: same path as a webhook, with
        the order reference pinned in the metadata."""
        if normalize_status(status) is None:
            return ReconcileOutcome(
                ok=False,
                code=OutcomeCode.INVALID_TRANSITION,
                order_reference=order_reference,
                message=f"unknown status {status}",
            )
        data = dict(payment_data or {})
        metadata = dict(data.get("metadata") or {}) if isinstance(data.get("metadata"), dict) else {}
        metadata.setdefault("orderReference", (order_reference or "").strip())
        data["metadata"] = metadata
        return self.reconcile_payment_event(
            {"event": "manual.status_update", "status": status, "data": data},
            source=source,
        )

    def assign_rider(self, order_reference: str, rider_id: str, terminal_id: str | None = None) -> StoreResult:
        result = self.store.assign_delivery(order_reference, rider_id, terminal_id)
        logger.info(
            "rider_dispatch reference=%s rider=%s ok=%s code=%s",
            order_reference, rider_id, result.ok, result.code,
        )
        return result

    def complete_delivery(self, order_reference: str) -> StoreResult:
        result = self.store.complete_delivery(order_reference)
        logger.info("delivery_complete reference=%s ok=%s code=%s", order_reference, result.ok, result.code)
        return result

    # -- internals --------------------------------------------------------

    def _reconcile(self, raw_event: dict, *, source: str) -> ReconcileOutcome:
        event = PaymentEvent.from_raw(raw_event)
        if event is None:
            logger.warning("reconcile_malformed source=%s", source)
            return ReconcileOutcome(ok=False, code=OutcomeCode.MALFORMED, message="event must be an object")
        if event.status is None:
            logger.info("reconcile_ignored event=%s reference=%s source=%s", event.event_type, event.gateway_reference, source)
            return ReconcileOutcome(ok=True, code=OutcomeCode.IGNORED, message=event.event_type)

        order, strategy = self.resolve(event)
        if order is None:
            logger.error(
                "reconcile_unresolved event=%s metadata_reference=%s payment_reference=%s email=%s amount=%s source=%s",
                event.event_type,
                event.metadata_reference,
                event.gateway_reference,
                event.customer_email,
                event.amount_minor,
                source,
            )
            return ReconcileOutcome(ok=False, code=OutcomeCode.UNRESOLVED)

        payload = dict(event.data)
        payload.setdefault("orderReference", order.order_reference)
        if event.gateway_reference:
            payload.setdefault("transactionReference", event.gateway_reference)

        result = self.store.transition_payment(order.order_reference, event.status, payload, source=source)
        if not result.ok:
            code = OutcomeCode.UNRESOLVED if result.code == StoreCode.NOT_FOUND else OutcomeCode.INVALID_TRANSITION
            return ReconcileOutcome(
                ok=False,
                code=code,
                order_reference=order.order_reference,
                strategy=strategy,
                message=result.message,
            )

        self._route_channel(event, result.order, strategy)
        return ReconcileOutcome(
            ok=True,
            code=OutcomeCode.APPLIED if result.changed else OutcomeCode.UNCHANGED,
            order_reference=result.order.order_reference,
            applied_status=result.order.payment_status,
            strategy=strategy,
        )

    def _route_channel(self, event: PaymentEvent, order: OrderRecord, strategy: str | None):
        if event.channel == "terminal":
            if strategy != Strategy.ORDER_REFERENCE and event.gateway_reference != order.order_reference:
                logger.warning(
                    "terminal_payment_reference_mismatch reference=%s order=%s strategy=%s",
                    event.gateway_reference, order.order_reference, strategy,
                )
            logger.info("terminal_payment_processed reference=%s status=%s", order.order_reference, order.payment_status)
        elif event.channel in BANK_CHANNELS:
            if (
                event.receiver_account
                and order.virtual_account_number
                and event.receiver_account != order.virtual_account_number
            ):
                logger.warning(
                    "bank_transfer_account_mismatch reference=%s expected=%s received=%s",
                    order.order_reference, order.virtual_account_number, event.receiver_account,
                )
            logger.info("bank_transfer_payment_processed reference=%s status=%s", order.order_reference, order.payment_status)
        elif event.channel == "card" or not event.channel:
            logger.info("card_payment_processed reference=%s status=%s", order.order_reference, order.payment_status)
        else:
            logger.info("payment_channel_unhandled channel=%s reference=%s", event.channel, order.order_reference)
