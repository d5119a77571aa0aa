from __future__ import annotations

import hashlib

from grundy.integrations.payments.base import (
    CustomerResult,
    DedicatedAccountResult,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    TransferResult,
)
from grundy.utils.commission import money_major_to_minor, to_decimal


class MockPaymentsProvider(PaymentsProvider):
    """Deterministic offline gateway: every call succeeds, nothing leaves the
    process. Used when integrations are disabled for payments in dev."""

    name = "mock"

    def __init__(self):
        self.initialized: dict[str, dict] = {}
        self.transfers: list[dict] = []

    def initialize(self, *, amount, email, reference, metadata=None, split_config=None):
        self.initialized[reference] = {
            "amount": money_major_to_minor(amount),
            "email": email,
            "metadata": metadata or {},
            "split_config": split_config or {},
        }
        return PaymentInitializeResult(
            authorization_url=f"https://example.com/mock/pay?reference={reference}",
            reference=reference,
            provider=self.name,
            access_code=f"mock_{reference}",
            raw={"reference": reference, **self.initialized[reference]},
        )

    def verify(self, reference):
        seen = self.initialized.get(reference) or {}
        amount_minor = int(seen.get("amount") or 0)
        data = {
            "reference": reference,
            "status": "success",
            "amount": amount_minor,
            "currency": "NGN",
            "channel": "card",
            "customer": {"email": seen.get("email") or ""},
            "metadata": seen.get("metadata") or {},
        }
        return PaymentVerifyResult(
            status="success",
            amount=to_decimal(amount_minor) / 100,
            currency="NGN",
            customer=data["customer"]["email"],
            channel="card",
            raw={"status": True, "data": data},
        )

    def create_customer(self, *, email, first_name, metadata=None):
        code = "CUS_mock_" + hashlib.sha256((email or "").encode("utf-8")).hexdigest()[:10]
        return CustomerResult(customer_code=code, email=email, raw={"first_name": first_name, "metadata": metadata or {}})

    def create_dedicated_account(self, *, customer_code, preferred_bank, split_code="", subaccount=""):
        digits = int(hashlib.sha256(customer_code.encode("utf-8")).hexdigest()[:12], 16) % 10_000_000_000
        return DedicatedAccountResult(
            bank_name="Mock Bank",
            account_number=f"{digits:010d}",
            account_name=f"GRUNDY/{customer_code}",
            raw={"preferred_bank": preferred_bank, "split_code": split_code, "subaccount": subaccount},
        )

    def create_transfer(self, *, amount, recipient, reference, reason):
        self.transfers.append(
            {"amount": money_major_to_minor(amount), "recipient": recipient, "reference": reference, "reason": reason}
        )
        return TransferResult(reference=reference, status="success", transfer_code=f"TRF_mock_{len(self.transfers)}")
