from __future__ import annotations

from dataclasses import dataclass


@dataclass
class IntegrationResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class GatewayError(RuntimeError):
    """Opaque failure reported by the remote payment gateway.

    The message carries a ``CODE:detail`` prefix (``PAYSTACK_INIT_FAILED:...``)
    and ``result`` keeps the decoded envelope for logging. Never retried here.
    """

    def __init__(self, message: str, *, result: IntegrationResult | None = None):
        super().__init__(message)
        self.result = result

    @property
    def code(self) -> str:
        text = str(self)
        return text.split(":", 1)[0] if ":" in text else text
