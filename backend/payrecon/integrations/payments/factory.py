from __future__ import annotations

import logging

from payrecon.integrations.common import (
    IntegrationDisabledError,
    IntegrationMisconfiguredError,
    IntegrationUnavailableError,
)
from payrecon.integrations.payments.base import (
    CancellationResult,
    ConfirmationResult,
    PaymentsProvider,
    ProviderUnreachable,
)
from payrecon.integrations.payments.mock_provider import MockPaymentsProvider
from payrecon.integrations.payments.toss_provider import TossPaymentsProvider
from payrecon.utils.gateway_config import GatewayConfig

logger = logging.getLogger(__name__)


class UnavailablePaymentsProvider(PaymentsProvider):
    """Stand-in used when the gateway cannot be built; every call fails as unreachable."""

    name = "unavailable"

    def __init__(self, reason: str):
        self.reason = str(reason or "INTEGRATION_UNAVAILABLE")

    def confirm(self, *, payment_key: str, order_id: str, amount) -> ConfirmationResult:
        raise ProviderUnreachable(self.reason)

    def cancel(self, *, payment_key: str, reason: str, amount=None) -> CancellationResult:
        raise ProviderUnreachable(self.reason)


def build_payments_provider(config: GatewayConfig) -> PaymentsProvider:
    provider = (config.provider or "mock").strip().lower()

    if not config.enabled:
        raise IntegrationDisabledError(config.gateway_id, "PAYMENTS_ENABLED=false")

    if not config.currency_supported:
        raise IntegrationDisabledError(config.gateway_id, f"currency={config.currency} (KRW required)")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "toss":
        raise IntegrationMisconfiguredError(config.gateway_id, f"payments_provider={provider}")

    if not config.secret_key:
        raise IntegrationMisconfiguredError(config.gateway_id, "missing TOSS_SECRET_KEY")

    return TossPaymentsProvider(
        secret_key=config.secret_key,
        base_url=config.api_base_url,
        timeout=config.timeout_seconds,
    )


def build_provider_or_unavailable(config: GatewayConfig) -> PaymentsProvider:
    try:
        return build_payments_provider(config)
    except IntegrationUnavailableError as e:
        logger.warning("payments_provider_unavailable gateway_id=%s code=%s detail=%s", e.integration, e.code, e.detail)
        return UnavailablePaymentsProvider(str(e))


def payment_health(config: GatewayConfig) -> dict:
    provider = (config.provider or "mock").strip().lower()
    missing = config.missing_settings
    if not config.enabled or not config.currency_supported:
        status = "disabled"
    elif missing or provider not in ("toss", "mock"):
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "provider": provider,
        "gateway_id": config.gateway_id,
        "enabled": bool(config.enabled),
        "currency": config.currency,
        "missing": missing,
    }
