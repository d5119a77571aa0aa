from __future__ import annotations

from flask import current_app

from grundy.integrations.common import IntegrationMisconfiguredError
from grundy.integrations.payments.base import PaymentsProvider
from grundy.integrations.payments.factory import build_payments_provider
from grundy.services.order_reconciler import OrderReconciler
from grundy.services.order_store import InMemoryOrderStore, OrderStore
from grundy.services.sql_order_store import SqlOrderStore
from grundy.utils.settings import get_settings

STORE_EXTENSION_KEY = "grundy_order_store"
RECONCILER_EXTENSION_KEY = "grundy_reconciler"
PAYMENTS_EXTENSION_KEY = "grundy_payments"


def build_order_store(settings) -> OrderStore:
    backend = (getattr(settings, "order_store", "sql") or "sql").strip().lower()
    if backend == "memory":
        return InMemoryOrderStore()
    if backend == "sql":
        return SqlOrderStore()
    raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:order_store={backend}")


def install_order_store(app, store: OrderStore) -> None:
    app.extensions[STORE_EXTENSION_KEY] = store
    app.extensions[RECONCILER_EXTENSION_KEY] = OrderReconciler(store)


def current_order_store() -> OrderStore:
    return current_app.extensions[STORE_EXTENSION_KEY]


def current_reconciler() -> OrderReconciler:
    return current_app.extensions[RECONCILER_EXTENSION_KEY]


def current_payments_provider() -> PaymentsProvider:
    """One provider per app so the mock keeps state across requests.

    Raises ``IntegrationDisabledError``/``IntegrationMisconfiguredError`` from
    the factory; nothing is cached in that case.
    """
    provider = current_app.extensions.get(PAYMENTS_EXTENSION_KEY)
    if provider is None:
        provider = build_payments_provider(get_settings())
        current_app.extensions[PAYMENTS_EXTENSION_KEY] = provider
    return provider
