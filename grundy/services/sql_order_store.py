from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from grundy.extensions import db
from grundy.models import Order, OrderTransition
from grundy.services.order_store import (
    OrderRecord,
    OrderStore,
    PaymentStatus,
    ReferenceLocks,
    StoreCode,
    StoreResult,
    apply_delivery_assignment,
    apply_payment_transition,
    generate_order_id,
    normalize_payment_method,
    normalize_status,
    prepare_new_order,
)
from grundy.utils.commission import money_json, to_decimal

logger = logging.getLogger(__name__)


def _to_record(row: Order) -> OrderRecord:
    return OrderRecord(
        id=row.public_id,
        order_reference=row.order_reference,
        customer_email=row.customer_email,
        customer_name=row.customer_name or "",
        amount=to_decimal(row.amount),
        payment_method=row.payment_method,
        payment_status=row.payment_status,
        delivery_address=row.delivery_address,
        items=row.items,
        payment_reference=row.payment_reference,
        payment_details=row.payment_details,
        vendor_payouts=row.vendor_payouts,
        virtual_account_number=row.virtual_account_number,
        created_at=row.created_at,
        updated_at=row.updated_at,
        paid_at=row.paid_at,
        delivered_at=row.delivered_at,
        rider_id=row.rider_id,
        terminal_id=row.terminal_id,
    )


class SqlOrderStore(OrderStore):
    """Durable registry on Flask-SQLAlchemy.

    Same contract as ``InMemoryOrderStore``. Each mutation takes the
    per-reference lock, reads the row ``FOR UPDATE`` (ignored on SQLite) and
    commits once, together with an ``order_transitions`` audit row.
    """

    name = "sql"

    def __init__(self):
        self._locks = ReferenceLocks()

    def _row(self, reference: str, *, for_update: bool = False) -> Order | None:
        query = Order.query.filter_by(order_reference=reference)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _audit(self, row: Order, from_status: str, *, source: str, reason: str = "", metadata: dict | None = None):
        db.session.add(
            OrderTransition(
                order_reference=row.order_reference,
                from_status=from_status,
                to_status=row.payment_status,
                source=(source or "system")[:64],
                reason=(reason or "")[:240],
                metadata_json=json.dumps(metadata or {}, default=str)[:4000],
                created_at=datetime.utcnow(),
            )
        )

    def create(self, order_data):
        prepared = prepare_new_order(order_data)
        if isinstance(prepared, StoreResult):
            return prepared
        reference = prepared.order_reference
        with self._locks.hold(reference):
            if self._row(reference) is not None:
                logger.warning("order_create_duplicate reference=%s", reference)
                return StoreResult.failure(StoreCode.DUPLICATE_REFERENCE, f"order {reference} already exists")
            now = datetime.utcnow()
            row = Order(
                public_id=generate_order_id(),
                order_reference=reference,
                customer_email=prepared.customer_email,
                customer_name=prepared.customer_name,
                delivery_address=prepared.delivery_address,
                amount=prepared.amount,
                items_json=json.dumps(prepared.items, default=str),
                payment_method=prepared.payment_method,
                payment_status=PaymentStatus.PENDING,
                vendor_payouts_json=(
                    json.dumps(prepared.vendor_payouts, default=str) if prepared.vendor_payouts is not None else None
                ),
                virtual_account_number=prepared.virtual_account_number,
                created_at=now,
                updated_at=now,
            )
            try:
                db.session.add(row)
                self._audit(row, "", source="create")
                db.session.commit()
            except IntegrityError:
                # another process won the insert
                db.session.rollback()
                return StoreResult.failure(StoreCode.DUPLICATE_REFERENCE, f"order {reference} already exists")
            record = _to_record(row)
        logger.info(
            "order_created reference=%s method=%s amount=%s items=%s",
            reference,
            record.payment_method,
            money_json(record.amount),
            len(record.items),
        )
        return StoreResult.success(record)

    def transition_payment(self, order_reference, new_status, payment_data=None, *, source=""):
        reference = (order_reference or "").strip()
        target = normalize_status(new_status)
        with self._locks.hold(reference):
            try:
                row = self._row(reference, for_update=True)
                if row is None:
                    db.session.rollback()
                    logger.warning("order_transition_not_found reference=%s status=%s", reference, new_status)
                    return StoreResult.failure(StoreCode.NOT_FOUND, f"order {reference} not found")
                if target is None:
                    db.session.rollback()
                    return StoreResult.failure(StoreCode.INVALID_TRANSITION, f"unknown status {new_status}", _to_record(row))
                previous = row.payment_status
                changed, error = apply_payment_transition(row, target, payment_data, datetime.utcnow())
                if error:
                    db.session.rollback()
                    logger.warning(
                        "order_transition_rejected reference=%s from=%s to=%s source=%s",
                        reference, previous, target, source,
                    )
                    return StoreResult.failure(error, f"{previous}->{target} not allowed", _to_record(row))
                if changed:
                    self._audit(
                        row,
                        previous,
                        source=source,
                        metadata={"payment_reference": row.payment_reference},
                    )
                db.session.add(row)
                db.session.commit()
                record = _to_record(row)
            except Exception:
                db.session.rollback()
                raise
        logger.info(
            "order_transition reference=%s from=%s to=%s changed=%s source=%s",
            reference, previous, target, changed, source,
        )
        return StoreResult.success(record, changed=changed)

    def assign_delivery(self, order_reference, rider_id, terminal_id=None):
        reference = (order_reference or "").strip()
        rider = (rider_id or "").strip()
        with self._locks.hold(reference):
            try:
                row = self._row(reference, for_update=True)
                if row is None:
                    db.session.rollback()
                    return StoreResult.failure(StoreCode.NOT_FOUND, f"order {reference} not found")
                current_rider = row.rider_id
                changed, error = apply_delivery_assignment(row, rider, terminal_id, datetime.utcnow())
                if error:
                    db.session.rollback()
                    logger.warning(
                        "order_assignment_rejected reference=%s rider=%s current_rider=%s code=%s",
                        reference, rider, current_rider, error,
                    )
                    return StoreResult.failure(error, order=_to_record(row))
                if changed:
                    self._audit(
                        row,
                        row.payment_status,
                        source="dispatch",
                        reason="rider_assigned",
                        metadata={"rider_id": rider, "terminal_id": terminal_id},
                    )
                db.session.add(row)
                db.session.commit()
                record = _to_record(row)
            except Exception:
                db.session.rollback()
                raise
        logger.info("order_assigned reference=%s rider=%s terminal=%s", reference, rider, terminal_id)
        return StoreResult.success(record, changed=changed)

    def complete_delivery(self, order_reference):
        reference = (order_reference or "").strip()
        with self._locks.hold(reference):
            row = self._row(reference)
            if row is None:
                return StoreResult.failure(StoreCode.NOT_FOUND, f"order {reference} not found")
            if row.payment_status not in (PaymentStatus.PAID, PaymentStatus.DELIVERED):
                return StoreResult.failure(
                    StoreCode.INVALID_TRANSITION,
                    f"{row.payment_status}->{PaymentStatus.DELIVERED} not allowed",
                    _to_record(row),
                )
            return self.transition_payment(reference, PaymentStatus.DELIVERED, None, source="delivery")

    def get(self, order_reference):
        row = self._row((order_reference or "").strip())
        return _to_record(row) if row else None

    def list(self):
        return [_to_record(r) for r in Order.query.order_by(Order.id.asc()).all()]

    def list_by_status(self, status):
        target = normalize_status(status)
        rows = Order.query.filter_by(payment_status=target).order_by(Order.id.asc()).all()
        return [_to_record(r) for r in rows]

    def list_by_payment_method(self, method):
        target = normalize_payment_method(method)
        rows = Order.query.filter_by(payment_method=target).order_by(Order.id.asc()).all()
        return [_to_record(r) for r in rows]

    def find_by_payment_reference(self, payment_reference):
        ref = (payment_reference or "").strip()
        if not ref:
            return None
        row = Order.query.filter_by(payment_reference=ref).order_by(Order.id.asc()).first()
        return _to_record(row) if row else None

    def find_by_email_amount(self, email, amount):
        target_amount = to_decimal(amount)
        rows = Order.query.filter_by(customer_email=(email or "").strip().lower()).order_by(Order.id.asc()).all()
        return [_to_record(r) for r in rows if to_decimal(r.amount) == target_amount]

    def find_by_virtual_account(self, account_number):
        target = (account_number or "").strip()
        if not target:
            return []
        rows = Order.query.filter_by(virtual_account_number=target).order_by(Order.id.asc()).all()
        return [_to_record(r) for r in rows]
