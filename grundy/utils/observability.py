from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from datetime import datetime

import sentry_sdk
from flask import g, has_app_context, request

# fields an order request can attach to its access-log line and Sentry scope
ORDER_CONTEXT_FIELDS = ("order_reference", "rider_id", "terminal_id", "event_id", "vendor_id")

_SCRUB_HEADERS = ("authorization", "cookie", "set-cookie", "x-paystack-signature")
_SCRUB_BODY_KEYS = ("email", "customer_email", "customeremail", "phone", "account_number")


def _hash_ip(ip: str, salt: str) -> str:
    raw = f"{salt}:{ip or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def get_request_id() -> str:
    if not has_app_context():
        # timer thread before its app context is pushed
        return ""
    return getattr(g, "request_id", "") or ""


def bind_order_context(order_reference: str = "", **fields) -> dict:
    """Attach order identifiers to the current request or task.

    They end up on the access-log line and as Sentry tags, so a failed
    payment can be traced from either side by its order reference.
    """
    if not has_app_context():
        return {}
    context = dict(getattr(g, "order_context", None) or {})
    values = {"order_reference": order_reference, **fields}
    for key in ORDER_CONTEXT_FIELDS:
        value = str(values.get(key) or "").strip()
        if value:
            context[key] = value[:128]
            sentry_sdk.set_tag(key, context[key])
    g.order_context = context
    return context


def current_order_context() -> dict:
    if not has_app_context():
        return {}
    return dict(getattr(g, "order_context", None) or {})


def init_sentry(app) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        from sentry_sdk.integrations.celery import CeleryIntegration
        from sentry_sdk.integrations.flask import FlaskIntegration

        try:
            traces_rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0.0").strip())
        except ValueError:
            traces_rate = 0.0

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("GRUNDY_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration(), CeleryIntegration()],
            send_default_pii=False,
            traces_sample_rate=max(0.0, min(traces_rate, 1.0)),
            before_send=scrub_sentry_event,
        )
        sentry_sdk.set_tag("service", "grundy-orders")
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def _redact_body(data):
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in _SCRUB_BODY_KEYS else _redact_body(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_redact_body(v) for v in data]
    return data


def scrub_sentry_event(event, hint):
    """Drop credentials, the webhook signature and customer contact details."""
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in _SCRUB_HEADERS:
                headers[key] = "[REDACTED]"
        req["headers"] = headers
    if "data" in req:
        req["data"] = _redact_body(req["data"])
    if req:
        event["request"] = req
    if isinstance(event.get("extra"), dict):
        event["extra"] = _redact_body(event["extra"])
    return event


def init_otel(app, *, enabled: bool, env: str = "dev") -> None:
    if not enabled:
        return
    try:
        endpoint = (os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or "").strip()
        if not endpoint:
            app.logger.info("otel_disabled_no_endpoint")
            return
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.flask import FlaskInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from grundy.extensions import db

        resource = Resource.create({"service.name": "grundy-orders", "deployment.environment": env})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)

        def _tag_order_span(span, status, response_headers):
            # order context is only known once the view has run
            if span is None or not span.is_recording():
                return
            for key, value in current_order_context().items():
                span.set_attribute(f"grundy.{key}", value)

        FlaskInstrumentor().instrument_app(app, excluded_urls="api/health", response_hook=_tag_order_span)
        SQLAlchemyInstrumentor().instrument(engine=db.engine)
        app.logger.info("otel_enabled endpoint=%s env=%s", endpoint, env)
    except Exception as e:
        app.logger.warning("otel_init_failed err=%s", e)


def access_log_payload(app, response, latency_ms) -> dict:
    payload = {
        "ts": datetime.utcnow().isoformat(),
        "request_id": getattr(g, "request_id", "") or "",
        "path": request.path,
        "method": request.method,
        "status": int(response.status_code),
        "latency_ms": latency_ms,
        "ip_hash": _hash_ip(
            request.headers.get("X-Forwarded-For", request.remote_addr or ""),
            app.config.get("SECRET_KEY", "grundy"),
        ),
        "user_agent": (request.user_agent.string or "")[:180],
    }
    payload.update(current_order_context())
    return payload


def install_request_observers(app) -> None:
    @app.before_request
    def _request_observer_begin():
        rid = (request.headers.get("X-Request-Id") or "").strip()
        if not rid:
            rid = uuid.uuid4().hex
        g.request_id = rid
        g.request_started_at = time.perf_counter()
        g.order_context = {}
        sentry_sdk.set_tag("request_id", rid)

    @app.after_request
    def _request_observer_end(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        g.request_id = rid
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        latency_ms = round((time.perf_counter() - float(started)) * 1000.0, 2) if started is not None else None
        payload = access_log_payload(app, response, latency_ms)
        if payload.get("order_reference"):
            response.headers["X-Order-Reference"] = payload["order_reference"]
        app.logger.info(json.dumps(payload))
        return response
