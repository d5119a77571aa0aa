from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Vendor:
    id: str
    name: str
    email: str
    subaccount_code: str
    bank_code: str = ""
    bank_account_number: str = ""
    bank_account_name: str = ""

    def bank_details(self) -> dict:
        return {
            "bank_code": self.bank_code,
            "account_number": self.bank_account_number,
            "account_name": self.bank_account_name,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "subaccount_code": self.subaccount_code,
            **self.bank_details(),
        }


@dataclass
class VendorRegistry:
    vendors: dict[str, Vendor] = field(default_factory=dict)

    def get(self, vendor_id: str | None) -> Vendor | None:
        return self.vendors.get((vendor_id or "").strip())

    def __contains__(self, vendor_id) -> bool:
        return self.get(vendor_id) is not None

    def all(self) -> list[Vendor]:
        return list(self.vendors.values())


def _subaccount(env_key: str, fallback: str) -> str:
    return (os.getenv(env_key) or "").strip() or fallback


def _seed() -> list[Vendor]:
    return [
        Vendor(
            id="VENDOR_001",
            name="Fresh Farms",
            email="freshfarms@example.com",
            subaccount_code=_subaccount("PAYSTACK_FRESH_FARMS_SUBACCOUNT", "ACCT_xxx1"),
            bank_code="058",
            bank_account_number="0123456789",
            bank_account_name="Fresh Farms Ltd",
        ),
        Vendor(
            id="VENDOR_002",
            name="Vegetable King",
            email="vegeking@example.com",
            subaccount_code=_subaccount("PAYSTACK_VEGETABLE_KING_SUBACCOUNT", "ACCT_xxx2"),
            bank_code="058",
            bank_account_number="0123456780",
            bank_account_name="Vegetable King Ltd",
        ),
        Vendor(
            id="VENDOR_003",
            name="Meat Masters",
            email="meatmasters@example.com",
            subaccount_code=_subaccount("PAYSTACK_MEAT_MASTERS_SUBACCOUNT", "ACCT_xxx3"),
            bank_code="058",
            bank_account_number="0123456781",
            bank_account_name="Meat Masters Ltd",
        ),
        Vendor(
            id="VENDOR_004",
            name="Dairy Delight",
            email="dairydelight@example.com",
            subaccount_code=_subaccount("PAYSTACK_DAIRY_DELIGHT_SUBACCOUNT", "ACCT_xxx4"),
            bank_code="058",
            bank_account_number="0123456782",
            bank_account_name="Dairy Delight Ltd",
        ),
        Vendor(
            id="VENDOR_005",
            name="Bakery Corner",
            email="bakerycorner@example.com",
            subaccount_code=_subaccount("PAYSTACK_BAKERY_CORNER_SUBACCOUNT", "ACCT_xxx5"),
            bank_code="058",
            bank_account_number="0123456783",
            bank_account_name="Bakery Corner Ltd",
        ),
        Vendor(
            id="VENDOR_006",
            name="Grains Galore",
            email="grainsgalore@example.com",
            subaccount_code=_subaccount("PAYSTACK_GRAINS_GALORE_SUBACCOUNT", "ACCT_xxx6"),
            bank_code="058",
            bank_account_number="0123456784",
            bank_account_name="Grains Galore Ltd",
        ),
    ]


def default_vendor_registry() -> VendorRegistry:
    return VendorRegistry({v.id: v for v in _seed()})
