from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests

from grundy.integrations.common import GatewayError, IntegrationDisabledError, IntegrationMisconfiguredError
from grundy.integrations.payments.factory import build_payments_provider, payment_health
from grundy.integrations.payments.mock_provider import MockPaymentsProvider
from grundy.integrations.payments.paystack_provider import PaystackPaymentsProvider
from grundy.utils.paystack_client import compute_signature, verify_signature
from grundy.utils.settings import PlatformSettings


def _response(status_code=200, body=None):
    res = MagicMock()
    res.status_code = status_code
    res.content = b"{}" if body is not None else b""
    res.json.return_value = body
    return res


class PaystackProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = PaystackPaymentsProvider("sk_test_123", callback_url="https://shop.example.com/cb")

    @patch("grundy.integrations.payments.paystack_provider.requests.request")
    def test_initialize_sends_kobo_and_split(self, mocked):
        mocked.return_value = _response(
            body={
                "status": True,
                "data": {"authorization_url": "https://checkout.paystack.com/x", "access_code": "ac_1", "reference": "ORDER_1"},
            }
        )
        result = self.provider.initialize(
            amount=Decimal("4800"),
            email="ada@example.com",
            reference="ORDER_1",
            metadata={"orderReference": "ORDER_1"},
            split_config={"subaccount": "ACCT_xxx1", "transaction_charge": 48000, "bearer": "subaccount"},
        )
        method, url = mocked.call_args.args
        payload = mocked.call_args.kwargs["json"]
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://api.paystack.co/transaction/initialize")
        self.assertEqual(payload["amount"], 480000)
        self.assertEqual(payload["subaccount"], "ACCT_xxx1")
        self.assertEqual(payload["callback_url"], "https://shop.example.com/cb")
        self.assertEqual(mocked.call_args.kwargs["headers"]["Authorization"], "Bearer sk_test_123")
        self.assertEqual(result.authorization_url, "https://checkout.paystack.com/x")
        self.assertEqual(result.access_code, "ac_1")

    @patch("grundy.integrations.payments.paystack_provider.requests.request")
    def test_verify_converts_amount(self, mocked):
        mocked.return_value = _response(
            body={
                "status": True,
                "data": {
                    "status": "success",
                    "amount": 480050,
                    "currency": "NGN",
                    "channel": "card",
                    "customer": {"email": "ada@example.com"},
                    "metadata": {"orderReference": "ORDER_1"},
                },
            }
        )
        result = self.provider.verify("ORDER_1")
        self.assertEqual(mocked.call_args.args[1], "https://api.paystack.co/transaction/verify/ORDER_1")
        self.assertEqual(result.status, "success")
        self.assertEqual(result.amount, Decimal("4800.50"))
        self.assertEqual(result.data["metadata"]["orderReference"], "ORDER_1")

    @patch("grundy.integrations.payments.paystack_provider.requests.request")
    def test_gateway_rejection_raises_coded_error(self, mocked):
        mocked.return_value = _response(400, {"status": False, "message": "Invalid key"})
        with self.assertRaises(GatewayError) as ctx:
            self.provider.initialize(amount=100, email="a@example.com", reference="R")
        self.assertEqual(ctx.exception.code, "PAYSTACK_INIT_FAILED")
        self.assertIn("Invalid key", str(ctx.exception))
        self.assertEqual(ctx.exception.result.raw["message"], "Invalid key")

    @patch("grundy.integrations.payments.paystack_provider.requests.request")
    def test_network_error_raises_coded_error(self, mocked):
        mocked.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(GatewayError) as ctx:
            self.provider.verify("R")
        self.assertEqual(ctx.exception.code, "PAYSTACK_VERIFY_FAILED")

    @patch("grundy.integrations.payments.paystack_provider.requests.request")
    def test_dedicated_account_routing(self, mocked):
        mocked.return_value = _response(
            body={
                "status": True,
                "data": {"bank": {"name": "Wema Bank"}, "account_number": "9930000001", "account_name": "GRUNDY/ADA"},
            }
        )
        account = self.provider.create_dedicated_account(
            customer_code="CUS_1", preferred_bank="wema-bank", split_code="SPL_1"
        )
        payload = mocked.call_args.kwargs["json"]
        self.assertEqual(payload, {"customer": "CUS_1", "preferred_bank": "wema-bank", "split_code": "SPL_1"})
        self.assertEqual(account.bank_name, "Wema Bank")
        self.assertEqual(account.account_number, "9930000001")

    @patch("grundy.integrations.payments.paystack_provider.requests.request")
    def test_transfer_payload(self, mocked):
        mocked.return_value = _response(
            body={"status": True, "data": {"reference": "PAYOUT_R_V", "status": "pending", "transfer_code": "TRF_1"}}
        )
        result = self.provider.create_transfer(
            amount=Decimal("2074"), recipient="RCP_1", reference="PAYOUT_R_V", reason="payout"
        )
        payload = mocked.call_args.kwargs["json"]
        self.assertEqual(payload["amount"], 207400)
        self.assertEqual(payload["source"], "balance")
        self.assertEqual(result.transfer_code, "TRF_1")


class PaymentsFactoryTestCase(unittest.TestCase):
    def test_disabled_by_default(self):
        with self.assertRaises(IntegrationDisabledError):
            build_payments_provider(PlatformSettings())
        self.assertEqual(payment_health(PlatformSettings())["status"], "disabled")

    def test_mock_provider(self):
        settings = PlatformSettings(integrations_mode="sandbox", paystack_enabled=True, payments_provider="mock")
        self.assertIsInstance(build_payments_provider(settings), MockPaymentsProvider)

    def test_paystack_requires_secret(self):
        settings = PlatformSettings(integrations_mode="live", paystack_enabled=True, payments_provider="paystack")
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payments_provider(settings)
        health = payment_health(settings)
        self.assertEqual(health["status"], "misconfigured")
        self.assertIn("PAYSTACK_SECRET_KEY", health["missing"])
        self.assertIn("PAYSTACK_PLATFORM_SUBACCOUNT", health["missing"])

    def test_unknown_provider(self):
        settings = PlatformSettings(integrations_mode="live", paystack_enabled=True, payments_provider="stripe")
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payments_provider(settings)


class WebhookSignatureTestCase(unittest.TestCase):
    def test_signature_round_trip(self):
        raw = b'{"event":"charge.success"}'
        signature = compute_signature(raw, "sk_test")
        self.assertEqual(len(signature), 128)
        self.assertTrue(verify_signature(raw, signature, "sk_test"))
        self.assertTrue(verify_signature(raw, signature.upper(), "sk_test"))
        self.assertFalse(verify_signature(raw + b" ", signature, "sk_test"))
        self.assertFalse(verify_signature(raw, signature, "other"))
        self.assertFalse(verify_signature(raw, None, "sk_test"))
        self.assertFalse(verify_signature(raw, signature, ""))


if __name__ == "__main__":
    unittest.main()
