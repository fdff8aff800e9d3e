from __future__ import annotations

from urllib.parse import urlencode

from payrecon.models import Payment
from payrecon.services.callback_processor import (
    PARAM_CALLBACK_TYPE,
    PARAM_ORDER_ID,
    CallbackKind,
)
from payrecon.services.payment_store import SqlPaymentStore
from payrecon.utils import order_reference
from payrecon.utils.gateway_config import GatewayConfig
from payrecon.utils.money import whole_units

CALLBACK_PATH = "/api/payments/toss/callback"


def callback_url(config: GatewayConfig, kind: str, token: str) -> str:
    base = config.public_base_url.rstrip("/")
    if config.force_https_callbacks and base.startswith("http://"):
        base = "https://" + base[len("http://"):]
    query = urlencode({PARAM_CALLBACK_TYPE: kind, PARAM_ORDER_ID: token})
    return f"{base}{CALLBACK_PATH}?{query}"


def build_checkout_payload(payment: Payment, config: GatewayConfig, store: SqlPaymentStore) -> dict:
    """Data the browser card widget needs to start a payment attempt.

    A fresh order token is generated on every call. The first one is attached
    to the payment right away; later ones (retries) are resolved through the
    payment id they embed.
    """
    token = order_reference.generate(int(payment.id))
    if not payment.order_reference:
        store.attach_order_reference(payment, token)

    return {
        "gateway_id": config.gateway_id,
        "client_key": config.client_key,
        "payment_id": int(payment.id),
        "toss_order_id": token,
        "toss_order_name": (payment.order_name or f"Payment #{int(payment.id)}")[:100],
        "amount": whole_units(payment.amount),
        "currency": payment.currency or config.currency,
        "customer_name": payment.customer_name or "Guest",
        "customer_email": payment.customer_email or "",
        "success_url": callback_url(config, CallbackKind.SUCCESS, token),
        "fail_url": callback_url(config, CallbackKind.FAILURE, token),
    }
