from __future__ import annotations

import logging

import requests

from grundy.integrations.common import GatewayError, IntegrationResult
from grundy.integrations.payments.base import (
    CustomerResult,
    DedicatedAccountResult,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    TransferResult,
)
from grundy.utils.commission import money_major_to_minor, money_minor_to_major

logger = logging.getLogger(__name__)

PAYSTACK_BASE_URL = "https://api.paystack.co"


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, callback_url: str = "", base_url: str = PAYSTACK_BASE_URL, timeout: int = 25):
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, *, code: str, payload: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            r = requests.request(method, url, headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayError(
                f"{code}:{type(e).__name__}",
                result=IntegrationResult(ok=False, code=code, message=str(e)),
            ) from e
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if not isinstance(j, dict):
            j = {"payload": j}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (str(j.get("message") or "") or f"HTTP {r.status_code}").strip()
            logger.warning("paystack_call_failed path=%s http=%s message=%s", path, r.status_code, msg)
            raise GatewayError(f"{code}:{msg}", result=IntegrationResult(ok=False, code=code, message=msg, raw=j))
        return j

    def initialize(self, *, amount, email, reference, metadata=None, split_config=None):
        payload = {
            "email": email,
            "amount": money_major_to_minor(amount),
            "reference": reference,
            "metadata": metadata or {},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        payload.update(split_config or {})
        j = self._call("POST", "/transaction/initialize", code="PAYSTACK_INIT_FAILED", payload=payload)
        data = j.get("data") or {}
        return PaymentInitializeResult(
            authorization_url=(data.get("authorization_url") or "").strip(),
            reference=(data.get("reference") or reference).strip(),
            provider=self.name,
            access_code=(data.get("access_code") or "").strip(),
            raw=j,
        )

    def verify(self, reference):
        ref = (reference or "").strip()
        j = self._call("GET", f"/transaction/verify/{ref}", code="PAYSTACK_VERIFY_FAILED")
        data = j.get("data") or {}
        customer_email = ((data.get("customer") or {}).get("email") or "").strip()
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            amount=money_minor_to_major(data.get("amount") or 0),
            currency=(data.get("currency") or "NGN").strip().upper(),
            customer=customer_email,
            channel=(data.get("channel") or "").strip().lower(),
            raw=j,
        )

    def create_customer(self, *, email, first_name, metadata=None):
        j = self._call(
            "POST",
            "/customer",
            code="PAYSTACK_CUSTOMER_FAILED",
            payload={"email": email, "first_name": first_name, "metadata": metadata or {}},
        )
        data = j.get("data") or {}
        return CustomerResult(customer_code=(data.get("customer_code") or "").strip(), email=email, raw=j)

    def create_dedicated_account(self, *, customer_code, preferred_bank, split_code="", subaccount=""):
        payload = {"customer": customer_code, "preferred_bank": preferred_bank}
        if split_code:
            payload["split_code"] = split_code
        if subaccount:
            payload["subaccount"] = subaccount
        j = self._call("POST", "/dedicated_account", code="PAYSTACK_DVA_FAILED", payload=payload)
        data = j.get("data") or {}
        return DedicatedAccountResult(
            bank_name=((data.get("bank") or {}).get("name") or "").strip(),
            account_number=(data.get("account_number") or "").strip(),
            account_name=(data.get("account_name") or "").strip(),
            raw=j,
        )

    def create_transfer(self, *, amount, recipient, reference, reason):
        j = self._call(
            "POST",
            "/transfer",
            code="PAYSTACK_TRANSFER_FAILED",
            payload={
                "source": "balance",
                "amount": money_major_to_minor(amount),
                "recipient": recipient,
                "reason": reason,
                "reference": reference,
            },
        )
        data = j.get("data") or {}
        return TransferResult(
            reference=(data.get("reference") or reference).strip(),
            status=(data.get("status") or "").strip().lower(),
            transfer_code=(data.get("transfer_code") or "").strip(),
            raw=j,
        )
