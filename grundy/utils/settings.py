from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app, has_app_context

from grundy.services.payout_splitter import FeeSchedule
from grundy.utils.commission import (
    PLATFORM_FEE_RATE,
    PROCESSING_FEE_FIXED,
    PROCESSING_FEE_RATE,
    to_decimal,
)

SETTINGS_EXTENSION_KEY = "grundy_settings"


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_rate(name: str, default: Decimal) -> Decimal:
    value = to_decimal(os.getenv(name), default=str(default))
    if value < 0:
        return default
    return value


@dataclass
class PlatformSettings:
    env: str = "dev"
    order_store: str = "sql"
    integrations_mode: str = "disabled"
    payments_provider: str = "mock"
    paystack_enabled: bool = False
    paystack_secret_key: str = ""
    paystack_public_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_callback_url: str = ""
    paystack_platform_subaccount: str = ""
    paystack_split_code: str = ""
    webhook_queue_enabled: bool = False
    terminal_confirm_queue_enabled: bool = False
    terminal_confirm_delay_seconds: int = 2
    fees: FeeSchedule = field(default_factory=FeeSchedule)

    @property
    def is_production(self) -> bool:
        return self.env in ("prod", "production")

    @property
    def webhook_secret(self) -> str:
        return self.paystack_webhook_secret or self.paystack_secret_key

    @classmethod
    def from_env(cls) -> "PlatformSettings":
        return cls(
            env=_env("GRUNDY_ENV", "dev").lower(),
            order_store=_env("ORDER_STORE", "sql").lower(),
            integrations_mode=_env("INTEGRATIONS_MODE", "disabled").lower(),
            payments_provider=_env("PAYMENTS_PROVIDER", "mock").lower(),
            paystack_enabled=_env_bool("PAYSTACK_ENABLED", False),
            paystack_secret_key=_env("PAYSTACK_SECRET_KEY"),
            paystack_public_key=_env("PAYSTACK_PUBLIC_KEY"),
            paystack_webhook_secret=_env("PAYSTACK_WEBHOOK_SECRET"),
            paystack_callback_url=_env("PAYSTACK_CALLBACK_URL"),
            paystack_platform_subaccount=_env("PAYSTACK_PLATFORM_SUBACCOUNT"),
            paystack_split_code=_env("PAYSTACK_SPLIT_CODE"),
            webhook_queue_enabled=_env_bool("PAYSTACK_WEBHOOK_QUEUE", False),
            terminal_confirm_queue_enabled=_env_bool("TERMINAL_CONFIRM_QUEUE", False),
            terminal_confirm_delay_seconds=env_int("TERMINAL_CONFIRM_DELAY_SECONDS", 2, minimum=0, maximum=3600),
            fees=FeeSchedule(
                processing_rate=_env_rate("PROCESSING_FEE_RATE", PROCESSING_FEE_RATE),
                processing_fixed=_env_rate("PROCESSING_FEE_FIXED", PROCESSING_FEE_FIXED),
                platform_rate=_env_rate("PLATFORM_FEE_RATE", PLATFORM_FEE_RATE),
            ),
        )


def get_settings() -> PlatformSettings:
    if has_app_context():
        settings = current_app.extensions.get(SETTINGS_EXTENSION_KEY)
        if settings is not None:
            return settings
    return PlatformSettings.from_env()
