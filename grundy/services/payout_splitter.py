"""Multi-vendor cart -> fee and payout breakdown.

Amounts are Decimals in the catalog unit (naira). Nothing here rounds: the
conversion to kobo happens when a value leaves for the gateway (see
``split_config_service``), so fractional processing-fee shares survive until
then.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from grundy.data.vendors import VendorRegistry, default_vendor_registry
from grundy.utils.commission import (
    PLATFORM_FEE_RATE,
    PROCESSING_FEE_FIXED,
    PROCESSING_FEE_RATE,
    money_json,
    to_decimal,
)


class InvalidCartError(ValueError):
    pass


class UnknownVendorError(LookupError):
    def __init__(self, vendor_id: str):
        super().__init__(f"UNKNOWN_VENDOR:{vendor_id}")
        self.vendor_id = vendor_id


@dataclass(frozen=True)
class FeeSchedule:
    processing_rate: Decimal = PROCESSING_FEE_RATE
    processing_fixed: Decimal = PROCESSING_FEE_FIXED
    platform_rate: Decimal = PLATFORM_FEE_RATE


@dataclass(frozen=True)
class CartLine:
    vendor_id: str
    unit_price: Decimal
    quantity: int
    product_id: str = ""
    name: str = ""

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "product_id": self.product_id,
            "name": self.name,
            "unit_price": money_json(self.unit_price),
            "quantity": int(self.quantity),
        }


@dataclass(frozen=True)
class VendorPayout:
    vendor_id: str
    vendor_name: str
    gross_sales: Decimal
    platform_fee: Decimal
    processing_fee_share: Decimal
    net_payout: Decimal
    lines: tuple[CartLine, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "gross_sales": money_json(self.gross_sales),
            "platform_fee": money_json(self.platform_fee),
            "processing_fee_share": money_json(self.processing_fee_share),
            "net_payout": money_json(self.net_payout),
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass(frozen=True)
class OrderSplit:
    order_total: Decimal
    platform_revenue: Decimal
    total_processing_fee: Decimal
    vendor_payouts: tuple[VendorPayout, ...]

    @property
    def vendor_count(self) -> int:
        return len(self.vendor_payouts)

    def to_dict(self) -> dict:
        return {
            "order_total": money_json(self.order_total),
            "platform_revenue": money_json(self.platform_revenue),
            "total_processing_fee": money_json(self.total_processing_fee),
            "vendor_count": self.vendor_count,
            "has_multiple_vendors": should_use_split_payment(self),
            "vendor_payouts": [p.to_dict() for p in self.vendor_payouts],
        }


def _positive_int(value) -> int:
    if isinstance(value, bool):
        raise InvalidCartError("INVALID_QUANTITY")
    dec = to_decimal(value, default="-1")
    if dec != dec.to_integral_value() or dec <= 0:
        raise InvalidCartError("INVALID_QUANTITY")
    return int(dec)


def cart_line_from_item(item) -> CartLine:
    """Accept a CartLine, a flat ``{vendor_id, unit_price, quantity}`` dict or the
    storefront shape ``{product: {id, name, price, vendor}, quantity}``."""
    if isinstance(item, CartLine):
        return item
    if not isinstance(item, dict):
        raise InvalidCartError("INVALID_LINE")
    product = item.get("product") if isinstance(item.get("product"), dict) else {}
    vendor_id = (
        item.get("vendor_id")
        or item.get("vendorId")
        or product.get("vendor")
        or product.get("vendor_id")
        or ""
    )
    price_raw = item.get("unit_price", item.get("unitPrice", item.get("price", product.get("price"))))
    if price_raw is None:
        raise InvalidCartError("MISSING_PRICE")
    price = to_decimal(price_raw, default="-1")
    if price < 0:
        raise InvalidCartError("INVALID_PRICE")
    return CartLine(
        vendor_id=str(vendor_id).strip(),
        unit_price=price,
        quantity=_positive_int(item.get("quantity")),
        product_id=str(item.get("product_id") or product.get("id") or ""),
        name=str(item.get("name") or product.get("name") or ""),
    )


def calculate_split(
    cart_lines,
    *,
    registry: VendorRegistry | None = None,
    fees: FeeSchedule | None = None,
) -> OrderSplit:
    """Split a cart's value across its vendors and the platform.

    Vendors appear in first-seen order. Each vendor carries a share of the
    single blended processing fee proportional to its gross sales.

    Raises ``InvalidCartError`` for an empty or zero-value cart and
    ``UnknownVendorError`` when a line names a vendor missing from the registry.
    """
    registry = registry or default_vendor_registry()
    fees = fees or FeeSchedule()

    lines = [cart_line_from_item(item) for item in (cart_lines or [])]
    if not lines:
        raise InvalidCartError("EMPTY_CART")

    grouped: dict[str, list[CartLine]] = {}
    for line in lines:
        if registry.get(line.vendor_id) is None:
            raise UnknownVendorError(line.vendor_id)
        grouped.setdefault(line.vendor_id, []).append(line)

    gross_by_vendor = {vid: sum((ln.line_total for ln in vlines), Decimal("0")) for vid, vlines in grouped.items()}
    order_total = sum(gross_by_vendor.values(), Decimal("0"))
    if order_total <= 0:
        raise InvalidCartError("ZERO_TOTAL")

    total_processing_fee = order_total * fees.processing_rate + fees.processing_fixed

    payouts = []
    for vendor_id, vendor_lines in grouped.items():
        gross = gross_by_vendor[vendor_id]
        platform_fee = gross * fees.platform_rate
        if gross > 0:
            share = (gross * total_processing_fee) / order_total
        else:
            share = Decimal("0")
        payouts.append(
            VendorPayout(
                vendor_id=vendor_id,
                vendor_name=registry.get(vendor_id).name,
                gross_sales=gross,
                platform_fee=platform_fee,
                processing_fee_share=share,
                net_payout=gross - platform_fee - share,
                lines=tuple(vendor_lines),
            )
        )

    return OrderSplit(
        order_total=order_total,
        platform_revenue=sum((p.platform_fee for p in payouts), Decimal("0")),
        total_processing_fee=total_processing_fee,
        vendor_payouts=tuple(payouts),
    )


def should_use_split_payment(split: OrderSplit) -> bool:
    return split.vendor_count > 1
