from __future__ import annotations

from grundy.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from grundy.integrations.payments.base import PaymentsProvider
from grundy.integrations.payments.mock_provider import MockPaymentsProvider
from grundy.integrations.payments.paystack_provider import PaystackPaymentsProvider


def _settings_value(settings, key: str, default=None):
    return getattr(settings, key, default)


def build_payments_provider(settings) -> PaymentsProvider:
    mode = (_settings_value(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    enabled = bool(_settings_value(settings, "paystack_enabled", False))
    provider = (_settings_value(settings, "payments_provider", "mock") or "mock").strip().lower()

    if mode == "disabled" or not enabled:
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "paystack":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (_settings_value(settings, "paystack_secret_key", "") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing PAYSTACK_SECRET_KEY")

    return PaystackPaymentsProvider(
        secret_key=secret_key,
        callback_url=(_settings_value(settings, "paystack_callback_url", "") or "").strip(),
    )


def payment_health(settings) -> dict:
    mode = (_settings_value(settings, "integrations_mode", "disabled") or "disabled").strip().lower()
    enabled = bool(_settings_value(settings, "paystack_enabled", False))
    provider = (_settings_value(settings, "payments_provider", "mock") or "mock").strip().lower()
    missing = []
    if mode != "disabled" and enabled and provider == "paystack":
        for key, attr in (
            ("PAYSTACK_SECRET_KEY", "paystack_secret_key"),
            ("PAYSTACK_PUBLIC_KEY", "paystack_public_key"),
            ("PAYSTACK_PLATFORM_SUBACCOUNT", "paystack_platform_subaccount"),
        ):
            if not (_settings_value(settings, attr, "") or "").strip():
                missing.append(key)
    if mode == "disabled" or not enabled:
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "mode": mode,
        "provider": provider,
        "enabled": enabled,
        "missing": missing,
    }
