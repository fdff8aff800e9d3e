from __future__ import annotations

import logging
import os
from dataclasses import dataclass

DEFAULT_API_BASE_URL = "https://api.tosspayments.com/v1/"
SUPPORTED_CURRENCY = "KRW"
LOCK_TTL_MARGIN_SECONDS = 30.0

logger = logging.getLogger(__name__)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _env_float(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    return max(minimum, min(value, maximum))


def _success_template(default: str) -> str:
    template = _env_str("PAYMENT_SUCCESS_URL", default) or default
    try:
        template.format(payment_id=1, order_reference="pay_1_1")
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        logger.warning("payment_success_url_invalid template=%s err=%r using_default=true", template, e)
        return default
    return template


@dataclass(frozen=True)
class GatewayConfig:
    provider: str = "mock"
    enabled: bool = True
    gateway_id: str = "toss_card"
    currency: str = SUPPORTED_CURRENCY
    debug: bool = False
    secret_key: str = ""
    client_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout_seconds: float = 30.0
    public_base_url: str = "http://localhost:5000"
    force_https_callbacks: bool = False
    success_url: str = "/booking/received?payment_id={payment_id}"
    failed_url: str = "/booking/payment-failed"
    lock_ttl_seconds: float = 120.0
    lock_wait_seconds: float = 5.0
    admin_token: str = ""

    @property
    def currency_supported(self) -> bool:
        return self.currency.upper() == SUPPORTED_CURRENCY

    @property
    def missing_settings(self) -> list[str]:
        if self.provider != "toss":
            return []
        missing = []
        if not self.secret_key:
            missing.append("TOSS_SECRET_KEY")
        if not self.client_key:
            missing.append("TOSS_CLIENT_KEY")
        return missing

    @property
    def is_active(self) -> bool:
        return bool(self.enabled and self.currency_supported and not self.missing_settings)

    def success_redirect(self, *, payment_id, order_reference: str = "") -> str:
        return self.success_url.format(payment_id=payment_id, order_reference=order_reference or "")

    def failed_redirect(self) -> str:
        return self.failed_url

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks.
        return (
            f"GatewayConfig(provider={self.provider!r}, gateway_id={self.gateway_id!r}, "
            f"enabled={self.enabled!r}, currency={self.currency!r}, debug={self.debug!r})"
        )


def load_gateway_config() -> GatewayConfig:
    provider = _env_str("PAYMENTS_PROVIDER", "mock").lower() or "mock"
    timeout_seconds = _env_float("TOSS_TIMEOUT_SECONDS", 30.0, minimum=1.0, maximum=120.0)
    # A lease must outlive the confirm call it guards.
    lock_ttl_seconds = max(
        _env_float("CALLBACK_LOCK_TTL_SECONDS", 120.0, minimum=5.0, maximum=3600.0),
        timeout_seconds + LOCK_TTL_MARGIN_SECONDS,
    )
    return GatewayConfig(
        provider=provider,
        enabled=_env_bool("PAYMENTS_ENABLED", True),
        gateway_id=_env_str("PAYMENTS_GATEWAY_ID", "toss_card") or "toss_card",
        currency=(_env_str("PAYMENTS_CURRENCY", SUPPORTED_CURRENCY) or SUPPORTED_CURRENCY).upper(),
        debug=_env_bool("PAYMENTS_DEBUG", False),
        secret_key=_env_str("TOSS_SECRET_KEY"),
        client_key=_env_str("TOSS_CLIENT_KEY"),
        api_base_url=_env_str("TOSS_API_BASE_URL", DEFAULT_API_BASE_URL) or DEFAULT_API_BASE_URL,
        timeout_seconds=timeout_seconds,
        public_base_url=(_env_str("PUBLIC_BASE_URL", "http://localhost:5000") or "http://localhost:5000").rstrip("/"),
        force_https_callbacks=_env_bool("FORCE_HTTPS_CALLBACKS", False),
        success_url=_success_template(GatewayConfig.success_url),
        failed_url=_env_str("PAYMENT_FAILED_URL", GatewayConfig.failed_url) or GatewayConfig.failed_url,
        lock_ttl_seconds=lock_ttl_seconds,
        lock_wait_seconds=_env_float("CALLBACK_LOCK_WAIT_SECONDS", 5.0, minimum=0.0, maximum=60.0),
        admin_token=_env_str("ADMIN_API_TOKEN"),
    )
