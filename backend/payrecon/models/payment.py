from datetime import datetime

from payrecon.extensions import db


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    ON_HOLD = "on_hold"

    ALL = (PENDING, COMPLETED, FAILED, REFUNDED, ON_HOLD)
    TERMINAL = {COMPLETED, FAILED, REFUNDED, ON_HOLD}
    # Callback path only; the admin refund path adds COMPLETED -> REFUNDED.
    ALLOWED = {
        PENDING: {COMPLETED, FAILED, ON_HOLD, REFUNDED},
        COMPLETED: set(),
        FAILED: set(),
        REFUNDED: set(),
        ON_HOLD: set(),
    }


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, nullable=True, index=True)
    gateway_id = db.Column(db.String(64), nullable=False, default="toss_card", index=True)
    status = db.Column(db.String(16), nullable=False, default=PaymentStatus.PENDING, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="KRW")
    order_name = db.Column(db.String(120), nullable=True)
    customer_name = db.Column(db.String(120), nullable=True)
    customer_email = db.Column(db.String(190), nullable=True)

    order_reference = db.Column(db.String(64), nullable=True, unique=True)

    provider_payment_key = db.Column(db.String(200), nullable=True)
    provider_status = db.Column(db.String(32), nullable=True)
    transaction_key = db.Column(db.String(64), nullable=True)
    method = db.Column(db.String(32), nullable=True)
    approved_at = db.Column(db.String(40), nullable=True)
    card_company = db.Column(db.String(40), nullable=True)
    card_number = db.Column(db.String(32), nullable=True)
    card_approve_no = db.Column(db.String(16), nullable=True)
    card_type = db.Column(db.String(16), nullable=True)
    card_installment_months = db.Column(db.Integer, nullable=True)
    receipt_url = db.Column(db.String(500), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    callback_lock = db.Column(db.String(64), nullable=True)
    callback_locked_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_pending(self) -> bool:
        return (self.status or "").strip().lower() == PaymentStatus.PENDING

    def to_dict(self):
        return {
            "id": int(self.id),
            "booking_id": int(self.booking_id) if self.booking_id is not None else None,
            "gateway_id": self.gateway_id or "",
            "status": self.status or "",
            "amount": float(self.amount or 0),
            "currency": self.currency or "",
            "order_reference": self.order_reference or "",
            "provider_payment_key": self.provider_payment_key or "",
            "transaction_key": self.transaction_key or "",
            "method": self.method or "",
            "approved_at": self.approved_at or "",
            "card_company": self.card_company or "",
            "card_number": self.card_number or "",
            "card_type": self.card_type or "",
            "receipt_url": self.receipt_url or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
