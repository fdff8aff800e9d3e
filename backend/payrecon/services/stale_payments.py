from __future__ import annotations

from datetime import datetime, timedelta

from payrecon.models import Payment, PaymentStatus


def find_stale_pending(*, older_than: timedelta, now: datetime | None = None, gateway_id: str | None = None, limit: int = 500) -> list[Payment]:
    """Pending payments that were handed to the card widget but never got a callback."""
    cutoff = (now or datetime.utcnow()) - older_than
    query = Payment.query.filter(
        Payment.status == PaymentStatus.PENDING,
        Payment.order_reference.isnot(None),
        Payment.updated_at < cutoff,
    )
    if gateway_id:
        query = query.filter(Payment.gateway_id == gateway_id)
    return query.order_by(Payment.updated_at.asc(), Payment.id.asc()).limit(int(limit)).all()


def stale_summary(rows: list[Payment], *, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    items = []
    for row in rows:
        age = now - (row.updated_at or row.created_at or now)
        items.append(
            {
                "payment_id": int(row.id),
                "order_reference": row.order_reference or "",
                "amount": float(row.amount or 0),
                "age_minutes": int(age.total_seconds() // 60),
            }
        )
    return {"stale_count": len(items), "items": items}
