from __future__ import annotations

import base64
import logging
from typing import Any

import requests

from payrecon.integrations.payments.base import (
    CANCEL_REASON_MAX_LENGTH,
    CancellationResult,
    ConfirmationResult,
    PaymentsProvider,
    ProviderRejected,
    ProviderUnreachable,
)
from payrecon.utils.gateway_config import DEFAULT_API_BASE_URL
from payrecon.utils.money import whole_units

logger = logging.getLogger(__name__)


class TossPaymentsProvider(PaymentsProvider):
    name = "toss"

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.secret_key = secret_key
        self.base_url = (base_url or DEFAULT_API_BASE_URL).rstrip("/") + "/"
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        # Toss expects the secret key as the basic-auth user with an empty password.
        credentials = base64.b64encode(f"{self.secret_key}:".encode("utf-8")).decode("ascii")
        headers = {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key[:300]
        return headers

    def _post(self, path: str, body: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path.lstrip('/')}"
        try:
            r = self.session.request(
                method="POST",
                url=url,
                headers=self._headers(idempotency_key),
                json=body,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderUnreachable(f"Toss request timed out after {self.timeout:g}s") from exc
        except requests.RequestException as exc:
            raise ProviderUnreachable(f"Toss request failed: {exc}") from exc

        status_code = int(r.status_code)
        logger.debug("toss_api_response path=%s status=%s", path, status_code)
        try:
            j = r.json()
        except ValueError as exc:
            snippet = (getattr(r, "text", "") or "")[:200]
            raise ProviderRejected(
                "INVALID_RESPONSE",
                f"undecodable response body (HTTP {status_code}): {snippet}",
                http_status=status_code,
            ) from exc
        if not isinstance(j, dict):
            raise ProviderRejected("INVALID_RESPONSE", f"unexpected response shape (HTTP {status_code})", http_status=status_code)

        if status_code < 200 or status_code >= 300 or j.get("code"):
            code = str(j.get("code") or f"HTTP_{status_code}").strip()
            message = str(j.get("message") or f"HTTP {status_code}").strip()
            raise ProviderRejected(code, message, http_status=status_code)
        return j

    def confirm(self, *, payment_key: str, order_id: str, amount) -> ConfirmationResult:
        body = {
            "paymentKey": payment_key,
            "orderId": order_id,
            "amount": whole_units(amount),
        }
        j = self._post("payments/confirm", body, idempotency_key=f"confirm-{order_id}-{payment_key}")
        return ConfirmationResult.from_payload(j)

    def cancel(self, *, payment_key: str, reason: str, amount=None) -> CancellationResult:
        body: dict[str, Any] = {"cancelReason": (reason or "")[:CANCEL_REASON_MAX_LENGTH]}
        if amount is not None and whole_units(amount) > 0:
            body["cancelAmount"] = whole_units(amount)
        j = self._post(f"payments/{payment_key}/cancel", body)
        return CancellationResult.from_payload(j)
