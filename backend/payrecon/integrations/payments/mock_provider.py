from __future__ import annotations

from datetime import datetime, timezone

from payrecon.integrations.payments.base import (
    CANCEL_REASON_MAX_LENGTH,
    CancellationResult,
    CardDetails,
    ConfirmationResult,
    PaymentsProvider,
)
from payrecon.utils.money import whole_units


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def confirm(self, *, payment_key: str, order_id: str, amount) -> ConfirmationResult:
        approved_at = datetime.now(timezone.utc).isoformat()
        return ConfirmationResult(
            status=self.DONE,
            payment_key=payment_key,
            order_id=order_id,
            last_transaction_key=f"mock_tx_{order_id}",
            method="card",
            approved_at=approved_at,
            total_amount=whole_units(amount),
            card=CardDetails(company="mock", number="4330********123*", card_type="credit"),
            receipt_url=None,
            raw={"paymentKey": payment_key, "orderId": order_id, "provider": self.name},
        )

    def cancel(self, *, payment_key: str, reason: str, amount=None) -> CancellationResult:
        partial = amount is not None and whole_units(amount) > 0
        return CancellationResult(
            status="PARTIAL_CANCELED" if partial else "CANCELED",
            payment_key=payment_key,
            cancel_amount=whole_units(amount) if partial else None,
            canceled_at=datetime.now(timezone.utc).isoformat(),
            transaction_key=f"mock_cancel_{payment_key}",
            raw={"paymentKey": payment_key, "cancelReason": (reason or "")[:CANCEL_REASON_MAX_LENGTH], "provider": self.name},
        )
