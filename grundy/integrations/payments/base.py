from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass
class PaymentInitializeResult:
    authorization_url: str
    reference: str
    provider: str
    access_code: str = ""
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    status: str
    amount: Decimal
    currency: str
    customer: str
    channel: str = ""
    raw: dict | None = None

    @property
    def data(self) -> dict:
        """Gateway ``data`` object, the same shape a webhook carries."""
        return dict(((self.raw or {}).get("data") or {}))


@dataclass
class CustomerResult:
    customer_code: str
    email: str
    raw: dict | None = None


@dataclass
class DedicatedAccountResult:
    bank_name: str
    account_number: str
    account_name: str
    raw: dict | None = None


@dataclass
class TransferResult:
    reference: str
    status: str
    transfer_code: str = ""
    raw: dict | None = None


class PaymentsProvider:
    """Gateway client. Amounts are passed in naira; implementations convert
    to kobo on the wire."""

    name = "unknown"

    def initialize(
        self,
        *,
        amount: Decimal,
        email: str,
        reference: str,
        metadata: dict | None = None,
        split_config: dict | None = None,
    ) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def create_customer(self, *, email: str, first_name: str, metadata: dict | None = None) -> CustomerResult:
        raise NotImplementedError

    def create_dedicated_account(
        self,
        *,
        customer_code: str,
        preferred_bank: str,
        split_code: str = "",
        subaccount: str = "",
    ) -> DedicatedAccountResult:
        raise NotImplementedError

    def create_transfer(self, *, amount: Decimal, recipient: str, reference: str, reason: str) -> TransferResult:
        raise NotImplementedError
