from __future__ import annotations

import unittest
from decimal import Decimal

from grundy.data.vendors import Vendor, VendorRegistry
from grundy.services.payout_splitter import (
    CartLine,
    FeeSchedule,
    InvalidCartError,
    UnknownVendorError,
    calculate_split,
    cart_line_from_item,
    should_use_split_payment,
)


def _line(vendor_id, price, quantity=1):
    return {"vendor_id": vendor_id, "unit_price": price, "quantity": quantity}


class PayoutSplitterTestCase(unittest.TestCase):
    def test_two_vendor_scenario(self):
        split = calculate_split(
            [
                _line("VENDOR_001", 1200, 2),
                _line("VENDOR_002", 800, 3),
            ]
        )
        self.assertEqual(split.order_total, Decimal("4800"))
        self.assertEqual(split.total_processing_fee, Decimal("172"))
        self.assertEqual(split.platform_revenue, Decimal("480"))
        self.assertEqual([p.vendor_id for p in split.vendor_payouts], ["VENDOR_001", "VENDOR_002"])
        for payout in split.vendor_payouts:
            self.assertEqual(payout.gross_sales, Decimal("2400"))
            self.assertEqual(payout.platform_fee, Decimal("240"))
            self.assertEqual(payout.processing_fee_share, Decimal("86"))
            self.assertEqual(payout.net_payout, Decimal("2074"))
        self.assertTrue(should_use_split_payment(split))

    def test_conservation_with_fractional_shares(self):
        split = calculate_split(
            [
                _line("VENDOR_001", "1000"),
                _line("VENDOR_003", "333"),
                _line("VENDOR_001", "0.5", 3),
            ]
        )
        rebuilt = sum(
            (p.net_payout + p.platform_fee + p.processing_fee_share for p in split.vendor_payouts),
            Decimal("0"),
        )
        self.assertLess(abs(rebuilt - split.order_total), Decimal("0.000001"))
        shares = sum((p.processing_fee_share for p in split.vendor_payouts), Decimal("0"))
        self.assertLess(abs(shares - split.total_processing_fee), Decimal("0.000001"))

    def test_single_vendor_carries_whole_fee(self):
        split = calculate_split([_line("VENDOR_004", 500, 4)])
        self.assertEqual(split.vendor_count, 1)
        self.assertFalse(should_use_split_payment(split))
        payout = split.vendor_payouts[0]
        self.assertEqual(payout.processing_fee_share, split.total_processing_fee)
        self.assertEqual(payout.vendor_name, "Dairy Delight")

    def test_deterministic_and_first_seen_order(self):
        cart = [
            _line("VENDOR_005", 150, 2),
            _line("VENDOR_002", 90, 1),
            _line("VENDOR_005", 60, 1),
        ]
        first = calculate_split(cart)
        second = calculate_split(list(cart))
        self.assertEqual(first, second)
        self.assertEqual([p.vendor_id for p in first.vendor_payouts], ["VENDOR_005", "VENDOR_002"])
        self.assertEqual(len(first.vendor_payouts[0].lines), 2)

    def test_storefront_item_shape(self):
        line = cart_line_from_item(
            {"product": {"id": "p1", "name": "Tomatoes", "price": 250, "vendor": "VENDOR_002"}, "quantity": 2}
        )
        self.assertEqual(line, CartLine("VENDOR_002", Decimal("250"), 2, "p1", "Tomatoes"))
        self.assertEqual(line.line_total, Decimal("500"))

    def test_custom_fee_schedule(self):
        fees = FeeSchedule(processing_rate=Decimal("0"), processing_fixed=Decimal("0"), platform_rate=Decimal("0.2"))
        split = calculate_split([_line("VENDOR_001", 1000)], fees=fees)
        self.assertEqual(split.total_processing_fee, Decimal("0"))
        self.assertEqual(split.vendor_payouts[0].net_payout, Decimal("800"))

    def test_custom_registry(self):
        registry = VendorRegistry({"V1": Vendor(id="V1", name="Solo", email="solo@example.com", subaccount_code="ACCT_solo")})
        split = calculate_split([_line("V1", 100)], registry=registry)
        self.assertEqual(split.vendor_payouts[0].vendor_name, "Solo")
        with self.assertRaises(UnknownVendorError):
            calculate_split([_line("VENDOR_001", 100)], registry=registry)

    def test_invalid_carts(self):
        with self.assertRaises(InvalidCartError):
            calculate_split([])
        with self.assertRaises(InvalidCartError):
            calculate_split([_line("VENDOR_001", 0)])
        with self.assertRaises(InvalidCartError):
            calculate_split([_line("VENDOR_001", 100, 0)])
        with self.assertRaises(InvalidCartError):
            calculate_split([_line("VENDOR_001", 100, "1.5")])
        with self.assertRaises(InvalidCartError):
            calculate_split([_line("VENDOR_001", -5)])
        with self.assertRaises(InvalidCartError):
            calculate_split([{"vendor_id": "VENDOR_001", "quantity": 1}])

    def test_unknown_vendor_rejects_whole_cart(self):
        with self.assertRaises(UnknownVendorError) as ctx:
            calculate_split([_line("VENDOR_001", 100), _line("VENDOR_999", 50)])
        self.assertEqual(ctx.exception.vendor_id, "VENDOR_999")
        self.assertIn("UNKNOWN_VENDOR", str(ctx.exception))

    def test_to_dict_uses_string_money(self):
        body = calculate_split([_line("VENDOR_001", "10.25", 2)]).to_dict()
        self.assertEqual(body["order_total"], "20.5")
        self.assertFalse(body["has_multiple_vendors"])
        self.assertEqual(body["vendor_payouts"][0]["vendor_id"], "VENDOR_001")


if __name__ == "__main__":
    unittest.main()
