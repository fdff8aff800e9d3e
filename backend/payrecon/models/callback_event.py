from datetime import datetime

from payrecon.extensions import db


class CallbackEvent(db.Model):
    __tablename__ = "callback_events"

    id = db.Column(db.Integer, primary_key=True)
    gateway_id = db.Column(db.String(64), nullable=False, default="toss_card")
    kind = db.Column(db.String(16), nullable=True)
    order_reference = db.Column(db.String(64), nullable=True, index=True)
    payment_id = db.Column(db.Integer, nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=False, default="received")
    weak_failure = db.Column(db.Boolean, nullable=False, default=False)
    request_id = db.Column(db.String(64), nullable=True)
    detail = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "gateway_id": self.gateway_id or "",
            "kind": self.kind or "",
            "order_reference": self.order_reference or "",
            "payment_id": int(self.payment_id) if self.payment_id is not None else None,
            "outcome": self.outcome or "",
            "weak_failure": bool(self.weak_failure),
            "request_id": self.request_id or "",
            "detail": self.detail or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
