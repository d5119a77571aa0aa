from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from grundy.data.vendors import VendorRegistry, default_vendor_registry
from grundy.integrations.common import GatewayError
from grundy.integrations.payments.base import PaymentsProvider
from grundy.services.order_store import OrderRecord
from grundy.utils.commission import money_json, to_decimal

logger = logging.getLogger(__name__)


def _payout_field(payout: dict, *keys):
    for key in keys:
        if key in payout and payout[key] is not None:
            return payout[key]
    return None


def aggregate_vendor_payouts(orders: list[OrderRecord]) -> list[dict]:
    """Per-vendor totals over the payout snapshots stored on each order."""
    totals: dict[str, dict] = {}
    for order in orders:
        for payout in order.vendor_payouts or []:
            if not isinstance(payout, dict):
                continue
            vendor_id = str(_payout_field(payout, "vendor_id", "vendorId") or "").strip()
            if not vendor_id:
                continue
            row = totals.setdefault(
                vendor_id,
                {
                    "vendor_id": vendor_id,
                    "vendor_name": _payout_field(payout, "vendor_name", "vendorName") or "",
                    "total_sales": Decimal("0"),
                    "total_payouts": Decimal("0"),
                    "orders_count": 0,
                },
            )
            row["total_sales"] += to_decimal(_payout_field(payout, "gross_sales", "totalSales"))
            row["total_payouts"] += to_decimal(_payout_field(payout, "net_payout", "vendorPayout"))
            row["orders_count"] += 1
    return [
        {**row, "total_sales": money_json(row["total_sales"]), "total_payouts": money_json(row["total_payouts"])}
        for row in totals.values()
    ]


@dataclass
class PayoutTransferResult:
    vendor_id: str
    vendor_name: str
    amount: Decimal
    success: bool
    transfer_reference: str = ""
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "amount": money_json(self.amount),
            "success": self.success,
            "transfer_reference": self.transfer_reference,
            "message": self.message,
        }


def payout_reference(order_reference: str, vendor_id: str) -> str:
    return f"PAYOUT_{order_reference}_{vendor_id}"


def process_vendor_payouts(
    order: OrderRecord,
    provider: PaymentsProvider,
    *,
    registry: VendorRegistry | None = None,
) -> list[PayoutTransferResult]:
    """Send each vendor its net payout for ``order``.

    One transfer per vendor; a gateway failure is recorded on that vendor's
    result and the remaining vendors are still paid.
    """
    registry = registry or default_vendor_registry()
    results = []
    for payout in order.vendor_payouts or []:
        if not isinstance(payout, dict):
            continue
        vendor_id = str(_payout_field(payout, "vendor_id", "vendorId") or "").strip()
        vendor = registry.get(vendor_id)
        if vendor is None:
            logger.warning("vendor_payout_unknown_vendor reference=%s vendor=%s", order.order_reference, vendor_id)
            continue
        amount = to_decimal(_payout_field(payout, "net_payout", "vendorPayout"))
        reference = payout_reference(order.order_reference, vendor.id)
        try:
            transfer = provider.create_transfer(
                amount=amount,
                recipient=vendor.bank_account_number,
                reference=reference,
                reason=f"Payout for order {order.order_reference}",
            )
        except GatewayError as e:
            logger.error("vendor_payout_failed reference=%s vendor=%s err=%s", order.order_reference, vendor.id, e)
            results.append(
                PayoutTransferResult(vendor.id, vendor.name, amount, False, reference, message=str(e))
            )
            continue
        logger.info(
            "vendor_payout_sent reference=%s vendor=%s amount=%s status=%s",
            order.order_reference, vendor.id, money_json(amount), transfer.status,
        )
        results.append(
            PayoutTransferResult(vendor.id, vendor.name, amount, True, transfer.reference, message=transfer.status)
        )
    return results
