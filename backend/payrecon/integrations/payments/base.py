from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CANCEL_REASON_MAX_LENGTH = 200


class ProviderError(RuntimeError):
    """Base class for failures talking to the payment provider."""


class ProviderUnreachable(ProviderError):
    """Transport-level failure: DNS, TLS, connection reset or timeout."""


class ProviderRejected(ProviderError):
    """The provider answered but refused the request, or answered garbage."""

    def __init__(self, code: str, message: str = "", *, http_status: int | None = None):
        self.code = str(code or "UNKNOWN_ERROR").strip() or "UNKNOWN_ERROR"
        self.message = str(message or "").strip()
        self.http_status = int(http_status) if http_status is not None else None
        super().__init__(f"{self.code}: {self.message or 'provider rejected the request'}")


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


@dataclass
class CardDetails:
    company: str = ""
    number: str = ""
    approve_no: str = ""
    card_type: str = ""
    installment_plan_months: int = 0

    @classmethod
    def from_payload(cls, payload) -> CardDetails | None:
        data = _dict(payload)
        if not data:
            return None
        try:
            months = int(data.get("installmentPlanMonths") or 0)
        except (TypeError, ValueError):
            months = 0
        return cls(
            company=_text(data.get("company") or data.get("issuerCode")),
            number=_text(data.get("number")),
            approve_no=_text(data.get("approveNo")),
            card_type=_text(data.get("cardType")),
            installment_plan_months=months,
        )


@dataclass
class ConfirmationResult:
    status: str
    payment_key: str
    order_id: str = ""
    last_transaction_key: str = ""
    method: str = ""
    approved_at: str = ""
    total_amount: int | None = None
    card: CardDetails | None = None
    receipt_url: str | None = None
    raw: dict | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ConfirmationResult:
        data = _dict(payload)
        receipt = _dict(data.get("receipt"))
        total = data.get("totalAmount")
        try:
            total_amount = int(total) if total is not None else None
        except (TypeError, ValueError):
            total_amount = None
        return cls(
            status=_text(data.get("status")).upper(),
            payment_key=_text(data.get("paymentKey")),
            order_id=_text(data.get("orderId")),
            last_transaction_key=_text(data.get("lastTransactionKey")),
            method=_text(data.get("method")),
            approved_at=_text(data.get("approvedAt")),
            total_amount=total_amount,
            card=CardDetails.from_payload(data.get("card")),
            receipt_url=_text(receipt.get("url")) or None,
            raw=data,
        )


@dataclass
class CancellationResult:
    status: str
    payment_key: str
    cancel_amount: int | None = None
    canceled_at: str = ""
    transaction_key: str = ""
    raw: dict | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CancellationResult:
        data = _dict(payload)
        cancels = data.get("cancels") if isinstance(data.get("cancels"), list) else []
        latest = _dict(cancels[-1]) if cancels else {}
        amount = latest.get("cancelAmount")
        try:
            cancel_amount = int(amount) if amount is not None else None
        except (TypeError, ValueError):
            cancel_amount = None
        return cls(
            status=_text(data.get("status")).upper(),
            payment_key=_text(data.get("paymentKey")),
            cancel_amount=cancel_amount,
            canceled_at=_text(latest.get("canceledAt")),
            transaction_key=_text(latest.get("transactionKey")),
            raw=data,
        )


class PaymentsProvider:
    name = "unknown"
    # Provider status meaning the payment is captured.
    DONE = "DONE"

    def confirm(self, *, payment_key: str, order_id: str, amount) -> ConfirmationResult:
        raise NotImplementedError

    def cancel(self, *, payment_key: str, reason: str, amount=None) -> CancellationResult:
        raise NotImplementedError
