from __future__ import annotations

from dataclasses import dataclass

from grundy.data.vendors import VendorRegistry, default_vendor_registry
from grundy.integrations.common import IntegrationMisconfiguredError
from grundy.services.payout_splitter import (
    InvalidCartError,
    OrderSplit,
    UnknownVendorError,
    should_use_split_payment,
)
from grundy.utils.commission import money_major_to_minor


@dataclass(frozen=True)
class SingleVendorConfig:
    subaccount_id: str
    platform_fee_minor: int

    kind = "single_vendor"

    def to_paystack(self) -> dict:
        # Vendor bears the processing fee; platform keeps its cut as a flat charge.
        return {
            "subaccount": self.subaccount_id,
            "transaction_charge": int(self.platform_fee_minor),
            "bearer": "subaccount",
        }

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "subaccount_id": self.subaccount_id,
            "platform_fee_minor": int(self.platform_fee_minor),
        }


@dataclass(frozen=True)
class SplitShare:
    subaccount_id: str
    amount_minor: int


@dataclass(frozen=True)
class MultiVendorConfig:
    shares: tuple[SplitShare, ...]
    fee_bearer_id: str

    kind = "multi_vendor"

    @property
    def total_minor(self) -> int:
        return sum(int(s.amount_minor) for s in self.shares)

    def to_paystack(self) -> dict:
        return {
            "split": {
                "type": "flat",
                "bearer_type": "subaccount",
                "bearer_subaccount": self.fee_bearer_id,
                "subaccounts": [
                    {"subaccount": s.subaccount_id, "share": int(s.amount_minor)} for s in self.shares
                ],
            }
        }

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "fee_bearer_id": self.fee_bearer_id,
            "total_minor": self.total_minor,
            "shares": [
                {"subaccount_id": s.subaccount_id, "amount_minor": int(s.amount_minor)} for s in self.shares
            ],
        }


def _vendor_subaccount(registry: VendorRegistry, vendor_id: str) -> str:
    vendor = registry.get(vendor_id)
    if vendor is None:
        raise UnknownVendorError(vendor_id)
    return vendor.subaccount_code


def build_gateway_split_config(
    split: OrderSplit,
    *,
    platform_subaccount: str,
    registry: VendorRegistry | None = None,
) -> SingleVendorConfig | MultiVendorConfig:
    """Turn a payout breakdown into the fee-bearing gateway configuration.

    Multi-vendor shares always sum to the order total in kobo: every vendor
    gets its rounded net payout and the platform (fee bearer) takes the rest,
    rounding residue included.
    """
    registry = registry or default_vendor_registry()
    if not split.vendor_payouts:
        raise InvalidCartError("EMPTY_SPLIT")

    if not should_use_split_payment(split):
        payout = split.vendor_payouts[0]
        return SingleVendorConfig(
            subaccount_id=_vendor_subaccount(registry, payout.vendor_id),
            platform_fee_minor=money_major_to_minor(split.platform_revenue),
        )

    bearer = (platform_subaccount or "").strip()
    if not bearer:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_PLATFORM_SUBACCOUNT")

    vendor_shares = []
    for payout in split.vendor_payouts:
        amount_minor = money_major_to_minor(payout.net_payout, clamp=False)
        if amount_minor < 0:
            raise InvalidCartError(f"NEGATIVE_VENDOR_SHARE:{payout.vendor_id}")
        vendor_shares.append(SplitShare(_vendor_subaccount(registry, payout.vendor_id), amount_minor))

    total_minor = money_major_to_minor(split.order_total)
    bearer_minor = total_minor - sum(s.amount_minor for s in vendor_shares)
    return MultiVendorConfig(
        shares=tuple(vendor_shares) + (SplitShare(bearer, bearer_minor),),
        fee_bearer_id=bearer,
    )
