from __future__ import annotations

import json
import os
import unittest
from datetime import datetime

from grundy import create_app
from grundy.celery_app import handle_task_failure, task_context
from grundy.extensions import db
from grundy.models import WebhookEvent
from grundy.services.order_store import InMemoryOrderStore
from grundy.tasks.scale_tasks import TERMINAL_TASK_NAME, WEBHOOK_TASK_NAME


class CeleryObserversTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._saved_env = {
            "SQLALCHEMY_DATABASE_URI": os.getenv("SQLALCHEMY_DATABASE_URI"),
            "DATABASE_URL": os.getenv("DATABASE_URL"),
        }
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app(order_store=InMemoryOrderStore())
        cls.app.config.update(TESTING=True)

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        with self.app.app_context():
            WebhookEvent.query.delete()
            db.session.commit()

    def _event_row(self, event_id, status="received"):
        with self.app.app_context():
            db.session.add(
                WebhookEvent(
                    provider="paystack",
                    event_id=event_id,
                    event_type="charge.success",
                    status=status,
                    created_at=datetime.utcnow(),
                )
            )
            db.session.commit()

    def _row(self, event_id):
        with self.app.app_context():
            return WebhookEvent.query.filter_by(event_id=event_id).first().to_dict()

    def test_task_context_keeps_order_identifiers(self):
        context = task_context(
            {"payload": {"event": "charge.success"}, "event_id": "evt_1", "trace_id": " rid-1 ", "order_reference": ""}
        )
        self.assertEqual(context, {"trace_id": "rid-1", "event_id": "evt_1"})
        self.assertEqual(task_context(None), {})

    def test_exhausted_webhook_task_marks_event_failed(self):
        self._event_row("charge.success:77")
        with self.assertLogs(self.app.logger, level="ERROR") as logs:
            handle_task_failure(
                self.app,
                WEBHOOK_TASK_NAME,
                "task-1",
                {"event_id": "charge.success:77", "trace_id": "rid-77"},
                RuntimeError("db unavailable"),
            )
        row = self._row("charge.success:77")
        self.assertEqual(row["status"], "failed")
        self.assertIn("db unavailable", row["error"])
        logged = json.loads(logs.output[0].split(":", 2)[2])
        self.assertEqual(logged["event"], "celery_task_failure")
        self.assertEqual(logged["event_id"], "charge.success:77")
        self.assertEqual(logged["trace_id"], "rid-77")

    def test_processed_event_is_not_downgraded(self):
        self._event_row("charge.success:78", status="processed")
        handle_task_failure(self.app, WEBHOOK_TASK_NAME, "task-2", {"event_id": "charge.success:78"}, RuntimeError("x"))
        self.assertEqual(self._row("charge.success:78")["status"], "processed")

    def test_abandoned_terminal_confirmation_is_logged(self):
        with self.assertLogs(self.app.logger, level="WARNING") as logs:
            handle_task_failure(
                self.app,
                TERMINAL_TASK_NAME,
                "task-3",
                {"order_reference": "ORDER_T9", "terminal_id": "TERMINAL_001"},
                RuntimeError("timeout"),
            )
        self.assertTrue(any("terminal_confirmation_abandoned reference=ORDER_T9" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
