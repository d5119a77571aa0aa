from grundy.models.order import Order
from grundy.models.order_transition import OrderTransition
from grundy.models.webhook_event import WebhookEvent

__all__ = ["Order", "OrderTransition", "WebhookEvent"]
