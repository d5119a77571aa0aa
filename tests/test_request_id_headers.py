from __future__ import annotations

import json
import os
import unittest
import uuid

from grundy import create_app
from grundy.services.order_store import InMemoryOrderStore
from grundy.utils.observability import scrub_sentry_event


class RequestIdHeadersTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app(order_store=InMemoryOrderStore())
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        rid = (res.headers.get("X-Request-ID") or "").strip()
        self.assertTrue(rid)
        uuid.UUID(rid)

    def test_echoes_request_id_when_provided(self):
        incoming = "rid-test-123"
        res = self.client.get("/api/health", headers={"X-Request-ID": incoming})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.headers.get("X-Request-ID"), incoming)

    def test_error_payload_includes_trace_id(self):
        res = self.client.get("/api/orders/ORDER_MISSING", headers={"X-Request-ID": "rid-missing-order"})
        self.assertEqual(res.status_code, 404)
        body = res.get_json(force=True)
        self.assertIsInstance(body, dict)
        self.assertEqual(body.get("trace_id"), "rid-missing-order")
        self.assertEqual((body.get("trace_id") or "").strip(), (res.headers.get("X-Request-ID") or "").strip())

    def test_access_log_carries_order_reference(self):
        with self.assertLogs(self.app.logger, level="INFO") as logs:
            res = self.client.get("/api/orders/ORDER_LOGGED", headers={"X-Request-ID": "rid-order-log"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.headers.get("X-Order-Reference"), "ORDER_LOGGED")
        lines = []
        for message in logs.output:
            _, _, text = message.split(":", 2)
            if text.startswith("{"):
                lines.append(json.loads(text))
        access = [line for line in lines if line.get("request_id") == "rid-order-log"]
        self.assertEqual(len(access), 1)
        self.assertEqual(access[0]["order_reference"], "ORDER_LOGGED")
        self.assertEqual(access[0]["status"], 404)

    def test_health_has_no_order_context(self):
        res = self.client.get("/api/health")
        self.assertIsNone(res.headers.get("X-Order-Reference"))

    def test_sentry_events_drop_customer_contact(self):
        event = {
            "request": {
                "headers": {"Authorization": "Bearer sk_test", "X-Paystack-Signature": "abc", "Accept": "*/*"},
                "data": {"email": "ada@example.com", "items": [{"customer_email": "ada@example.com", "quantity": 2}]},
            },
            "extra": {"customerEmail": "ada@example.com", "order_reference": "ORDER_1"},
        }
        scrubbed = scrub_sentry_event(event, None)
        self.assertEqual(scrubbed["request"]["headers"]["Authorization"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["headers"]["X-Paystack-Signature"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["headers"]["Accept"], "*/*")
        self.assertEqual(scrubbed["request"]["data"]["email"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["data"]["items"][0]["customer_email"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["data"]["items"][0]["quantity"], 2)
        self.assertEqual(scrubbed["extra"]["customerEmail"], "[REDACTED]")
        self.assertEqual(scrubbed["extra"]["order_reference"], "ORDER_1")


if __name__ == "__main__":
    unittest.main()
