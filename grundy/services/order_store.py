"""Order registry: state machine, result values and the in-memory store.

Every mutation runs under a lock scoped to its ``order_reference`` and every
read hands back a copy, so callers never observe a half-applied transition.
The SQLAlchemy-backed store in ``sql_order_store`` keeps the same contract.
"""
from __future__ import annotations

import copy
import logging
import secrets
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from grundy.utils.commission import money_json, to_decimal

logger = logging.getLogger(__name__)


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    DELIVERED = "delivered"
    REFUNDED = "refunded"

    ALL = (PENDING, PAID, FAILED, DELIVERED, REFUNDED)
    TERMINAL = {FAILED, DELIVERED, REFUNDED}
    ALLOWED = {
        PENDING: {PENDING, PAID, FAILED},
        PAID: {PAID, DELIVERED, REFUNDED},
        FAILED: {FAILED},
        DELIVERED: {DELIVERED},
        REFUNDED: {REFUNDED},
    }
    ASSIGNABLE = {PENDING, PAID}


class PaymentMethod:
    PREPAY = "prepay"
    BANK_TRANSFER_ON_DELIVERY = "bank_transfer_on_delivery"
    TERMINAL_ON_DELIVERY = "terminal_on_delivery"

    ALL = (PREPAY, BANK_TRANSFER_ON_DELIVERY, TERMINAL_ON_DELIVERY)
    ALIASES = {
        "prepay_now": PREPAY,
        "bank_transfer_delivery": BANK_TRANSFER_ON_DELIVERY,
        "terminal_delivery": TERMINAL_ON_DELIVERY,
    }


class StoreCode:
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"
    INVALID_ORDER = "INVALID_ORDER"


def normalize_status(value: str | None) -> str | None:
    status = (value or "").strip().lower()
    if status in ("success", "succeeded"):
        return PaymentStatus.PAID
    return status if status in PaymentStatus.ALL else None


def normalize_payment_method(value: str | None) -> str | None:
    method = (value or "").strip().lower()
    method = PaymentMethod.ALIASES.get(method, method)
    return method if method in PaymentMethod.ALL else None


def is_allowed_transition(current: str, target: str) -> bool:
    return target in PaymentStatus.ALLOWED.get(current, {current})


def generate_order_reference() -> str:
    return f"ORDER_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def generate_order_id() -> str:
    return f"order_{uuid.uuid4().hex[:16]}"


@dataclass
class OrderRecord:
    id: str
    order_reference: str
    customer_email: str
    customer_name: str
    amount: Decimal
    payment_method: str
    payment_status: str = PaymentStatus.PENDING
    delivery_address: str | None = None
    items: list = field(default_factory=list)
    payment_reference: str | None = None
    payment_details: dict | None = None
    vendor_payouts: list | None = None
    virtual_account_number: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    delivered_at: datetime | None = None
    rider_id: str | None = None
    terminal_id: str | None = None

    def copy(self) -> "OrderRecord":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        def _ts(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "order_reference": self.order_reference,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "delivery_address": self.delivery_address,
            "amount": money_json(self.amount),
            "items": self.items or [],
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_reference": self.payment_reference,
            "payment_details": self.payment_details,
            "vendor_payouts": self.vendor_payouts,
            "virtual_account_number": self.virtual_account_number,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
            "paid_at": _ts(self.paid_at),
            "delivered_at": _ts(self.delivered_at),
            "rider_id": self.rider_id,
            "terminal_id": self.terminal_id,
        }


@dataclass
class StoreResult:
    ok: bool
    code: str = StoreCode.OK
    order: OrderRecord | None = None
    changed: bool = False
    message: str = ""

    @classmethod
    def success(cls, order: OrderRecord, *, changed: bool = True) -> "StoreResult":
        return cls(ok=True, code=StoreCode.OK, order=order, changed=changed)

    @classmethod
    def failure(cls, code: str, message: str = "", order: OrderRecord | None = None) -> "StoreResult":
        return cls(ok=False, code=code, order=order, changed=False, message=message)


@dataclass
class NewOrder:
    """Validated creation payload shared by every store implementation."""

    order_reference: str
    customer_email: str
    customer_name: str
    amount: Decimal
    payment_method: str
    delivery_address: str | None
    items: list
    vendor_payouts: list | None
    virtual_account_number: str | None


def prepare_new_order(order_data: dict) -> NewOrder | StoreResult:
    data = order_data if isinstance(order_data, dict) else {}
    email = (data.get("customer_email") or data.get("customerEmail") or "").strip().lower()
    if not email:
        return StoreResult.failure(StoreCode.INVALID_ORDER, "customer_email is required")
    method = normalize_payment_method(data.get("payment_method") or data.get("paymentMethod"))
    if method is None:
        return StoreResult.failure(StoreCode.INVALID_ORDER, "unsupported payment_method")
    amount = to_decimal(data.get("amount"), default="-1")
    if amount <= 0:
        return StoreResult.failure(StoreCode.INVALID_ORDER, "amount must be positive")
    reference = str(data.get("order_reference") or data.get("orderReference") or "").strip()
    name = (data.get("customer_name") or data.get("customerName") or "").strip() or email.split("@")[0]
    payouts = data.get("vendor_payouts", data.get("vendorPayouts"))
    return NewOrder(
        order_reference=reference or generate_order_reference(),
        customer_email=email,
        customer_name=name,
        amount=amount,
        payment_method=method,
        delivery_address=(data.get("delivery_address") or data.get("deliveryAddress") or None),
        items=copy.deepcopy(list(data.get("items") or [])),
        vendor_payouts=copy.deepcopy(list(payouts)) if payouts is not None else None,
        virtual_account_number=(str(data.get("virtual_account_number") or "").strip() or None),
    )


class ReferenceLocks:
    """One re-entrant lock per order reference.

    Entries are counted by holder and dropped when the last one leaves, so
    lookups of unknown references do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, reference: str):
        with self._guard:
            entry = self._locks.get(reference)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[reference] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(reference, None)


class OrderStore:
    name = "unknown"

    def create(self, order_data: dict) -> StoreResult:
        raise NotImplementedError

    def transition_payment(self, order_reference: str, new_status: str, payment_data: dict | None = None, *, source: str = "") -> StoreResult:
        raise NotImplementedError

    def assign_delivery(self, order_reference: str, rider_id: str, terminal_id: str | None = None) -> StoreResult:
        raise NotImplementedError

    def complete_delivery(self, order_reference: str) -> StoreResult:
        raise NotImplementedError

    def get(self, order_reference: str) -> OrderRecord | None:
        raise NotImplementedError

    def list(self) -> list[OrderRecord]:
        raise NotImplementedError

    def list_by_status(self, status: str) -> list[OrderRecord]:
        target = normalize_status(status)
        return [o for o in self.list() if o.payment_status == target]

    def list_by_payment_method(self, method: str) -> list[OrderRecord]:
        target = normalize_payment_method(method)
        return [o for o in self.list() if o.payment_method == target]

    def find_by_payment_reference(self, payment_reference: str) -> OrderRecord | None:
        raise NotImplementedError

    def find_by_email_amount(self, email: str, amount: Decimal) -> list[OrderRecord]:
        target_email = (email or "").strip().lower()
        target_amount = to_decimal(amount)
        return [o for o in self.list() if o.customer_email == target_email and o.amount == target_amount]

    def find_by_virtual_account(self, account_number: str) -> list[OrderRecord]:
        target = (account_number or "").strip()
        if not target:
            return []
        return [o for o in self.list() if o.virtual_account_number == target]


def apply_payment_transition(order, new_status: str, payment_data: dict | None, now: datetime) -> tuple[bool, str | None]:
    """Mutate ``order`` (record or row) in place; returns (changed, error_code).

    Shared by both stores so the write-once rules cannot drift apart.
    """
    current = order.payment_status
    if not is_allowed_transition(current, new_status):
        return False, StoreCode.INVALID_TRANSITION

    changed = current != new_status
    if payment_data is not None:
        order.payment_details = copy.deepcopy(payment_data)
        ref = str((payment_data or {}).get("reference") or "").strip()
        # written once, by the successful charge
        if ref and new_status == PaymentStatus.PAID and not order.payment_reference:
            order.payment_reference = ref
            changed = True
    order.payment_status = new_status
    if new_status == PaymentStatus.PAID and not order.paid_at:
        order.paid_at = now
    if new_status == PaymentStatus.DELIVERED and not order.delivered_at:
        order.delivered_at = now
    order.updated_at = now
    return changed, None


def apply_delivery_assignment(order, rider_id: str, terminal_id: str | None, now: datetime) -> tuple[bool, str | None]:
    if order.payment_status not in PaymentStatus.ASSIGNABLE:
        return False, StoreCode.INVALID_TRANSITION
    if order.rider_id:
        if order.rider_id == rider_id:
            return False, None
        return False, StoreCode.ALREADY_ASSIGNED
    order.rider_id = rider_id
    order.terminal_id = terminal_id or None
    order.updated_at = now
    return True, None


class InMemoryOrderStore(OrderStore):
    name = "memory"

    def __init__(self):
        self._orders: dict[str, OrderRecord] = {}
        self._by_payment_reference: dict[str, str] = {}
        self._index_lock = threading.Lock()
        self._locks = ReferenceLocks()

    def _snapshot(self, reference: str) -> OrderRecord | None:
        record = self._orders.get(reference)
        return record.copy() if record else None

    def create(self, order_data: dict) -> StoreResult:
        prepared = prepare_new_order(order_data)
        if isinstance(prepared, StoreResult):
            return prepared
        reference = prepared.order_reference
        with self._locks.hold(reference):
            if reference in self._orders:
                logger.warning("order_create_duplicate reference=%s", reference)
                return StoreResult.failure(StoreCode.DUPLICATE_REFERENCE, f"order {reference} already exists")
            now = datetime.utcnow()
            record = OrderRecord(
                id=generate_order_id(),
                order_reference=reference,
                customer_email=prepared.customer_email,
                customer_name=prepared.customer_name,
                amount=prepared.amount,
                payment_method=prepared.payment_method,
                delivery_address=prepared.delivery_address,
                items=prepared.items,
                vendor_payouts=prepared.vendor_payouts,
                virtual_account_number=prepared.virtual_account_number,
                created_at=now,
                updated_at=now,
            )
            with self._index_lock:
                # dicts keep insertion order, which is creation order here
                self._orders[reference] = record
        logger.info(
            "order_created reference=%s method=%s amount=%s items=%s",
            reference,
            record.payment_method,
            money_json(record.amount),
            len(record.items),
        )
        return StoreResult.success(record.copy())

    def transition_payment(self, order_reference, new_status, payment_data=None, *, source=""):
        reference = (order_reference or "").strip()
        target = normalize_status(new_status)
        with self._locks.hold(reference):
            record = self._orders.get(reference)
            if record is None:
                logger.warning("order_transition_not_found reference=%s status=%s", reference, new_status)
                return StoreResult.failure(StoreCode.NOT_FOUND, f"order {reference} not found")
            if target is None:
                return StoreResult.failure(StoreCode.INVALID_TRANSITION, f"unknown status {new_status}", record.copy())
            previous = record.payment_status
            working = record.copy()
            changed, error = apply_payment_transition(working, target, payment_data, datetime.utcnow())
            if error:
                logger.warning(
                    "order_transition_rejected reference=%s from=%s to=%s source=%s",
                    reference, previous, target, source,
                )
                return StoreResult.failure(error, f"{previous}->{target} not allowed", record.copy())
            with self._index_lock:
                self._orders[reference] = working
                if working.payment_reference:
                    self._by_payment_reference.setdefault(working.payment_reference, reference)
        logger.info(
            "order_transition reference=%s from=%s to=%s changed=%s source=%s",
            reference, previous, target, changed, source,
        )
        return StoreResult.success(working.copy(), changed=changed)

    def assign_delivery(self, order_reference, rider_id, terminal_id=None):
        reference = (order_reference or "").strip()
        rider = (rider_id or "").strip()
        with self._locks.hold(reference):
            record = self._orders.get(reference)
            if record is None:
                return StoreResult.failure(StoreCode.NOT_FOUND, f"order {reference} not found")
            working = record.copy()
            changed, error = apply_delivery_assignment(working, rider, terminal_id, datetime.utcnow())
            if error:
                logger.warning(
                    "order_assignment_rejected reference=%s rider=%s current_rider=%s code=%s",
                    reference, rider, record.rider_id, error,
                )
                return StoreResult.failure(error, order=record.copy())
            with self._index_lock:
                self._orders[reference] = working
        logger.info("order_assigned reference=%s rider=%s terminal=%s", reference, rider, terminal_id)
        return StoreResult.success(working.copy(), changed=changed)

    def complete_delivery(self, order_reference):
        reference = (order_reference or "").strip()
        with self._locks.hold(reference):
            record = self._orders.get(reference)
            if record is None:
                return StoreResult.failure(StoreCode.NOT_FOUND, f"order {reference} not found")
            if record.payment_status not in (PaymentStatus.PAID, PaymentStatus.DELIVERED):
                return StoreResult.failure(
                    StoreCode.INVALID_TRANSITION,
                    f"{record.payment_status}->{PaymentStatus.DELIVERED} not allowed",
                    record.copy(),
                )
            return self.transition_payment(reference, PaymentStatus.DELIVERED, None, source="delivery")

    def get(self, order_reference):
        with self._index_lock:
            return self._snapshot((order_reference or "").strip())

    def list(self):
        with self._index_lock:
            return [r.copy() for r in self._orders.values()]

    def find_by_payment_reference(self, payment_reference):
        ref = (payment_reference or "").strip()
        if not ref:
            return None
        with self._index_lock:
            reference = self._by_payment_reference.get(ref)
            return self._snapshot(reference) if reference else None
