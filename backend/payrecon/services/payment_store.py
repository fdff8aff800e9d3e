from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from payrecon.extensions import db
from payrecon.integrations.payments.base import ConfirmationResult
from payrecon.models import Payment, PaymentLog, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentStore:
    """Ledger operations the callback processor depends on.

    ``transition_to`` and ``claim`` must be atomic with respect to concurrent
    callers working on the same payment.
    """

    def find_by_order_reference(self, token: str) -> Payment | None:
        raise NotImplementedError

    def find_latest_pending_by_internal_id(self, internal_id: int) -> Payment | None:
        raise NotImplementedError

    def find_by_internal_id(self, internal_id: int) -> Payment | None:
        raise NotImplementedError

    def attach_order_reference(self, record: Payment, token: str) -> bool:
        raise NotImplementedError

    def transition_to(
        self,
        record: Payment,
        new_status: str,
        note: str,
        *,
        confirmation: ConfirmationResult | None = None,
    ) -> bool:
        raise NotImplementedError

    def claim(self, record: Payment) -> bool:
        raise NotImplementedError

    def release(self, record: Payment) -> None:
        raise NotImplementedError

    def refresh(self, record: Payment) -> Payment:
        raise NotImplementedError


def _confirmation_columns(confirmation: ConfirmationResult | None) -> dict:
    if confirmation is None:
        return {}
    columns = {
        "provider_payment_key": (confirmation.payment_key or "")[:200] or None,
        "provider_status": (confirmation.status or "")[:32] or None,
        "transaction_key": (confirmation.last_transaction_key or "")[:64] or None,
        "method": (confirmation.method or "")[:32] or None,
        "approved_at": (confirmation.approved_at or "")[:40] or None,
        "receipt_url": (confirmation.receipt_url or "")[:500] or None,
        "metadata_json": json.dumps(confirmation.raw or {}, default=str)[:8000],
    }
    card = confirmation.card
    if card is not None:
        columns.update(
            {
                "card_company": (card.company or "")[:40] or None,
                "card_number": (card.number or "")[:32] or None,
                "card_approve_no": (card.approve_no or "")[:16] or None,
                "card_type": (card.card_type or "")[:16] or None,
                "card_installment_months": int(card.installment_plan_months or 0),
            }
        )
    return columns


class SqlPaymentStore(PaymentStore):
    def __init__(self, *, gateway_id: str, lock_ttl_seconds: float = 120.0):
        self.gateway_id = gateway_id
        self.lock_ttl_seconds = float(lock_ttl_seconds)
        self._lock_tokens: dict[int, str] = {}

    def find_by_order_reference(self, token: str) -> Payment | None:
        ref = (token or "").strip()
        if not ref:
            return None
        return Payment.query.filter_by(order_reference=ref[:64], gateway_id=self.gateway_id).first()

    def find_latest_pending_by_internal_id(self, internal_id: int) -> Payment | None:
        return (
            Payment.query
            .filter_by(id=int(internal_id), gateway_id=self.gateway_id, status=PaymentStatus.PENDING)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )

    def find_by_internal_id(self, internal_id: int) -> Payment | None:
        return Payment.query.filter_by(id=int(internal_id), gateway_id=self.gateway_id).first()

    def attach_order_reference(self, record: Payment, token: str) -> bool:
        ref = (token or "").strip()[:64]
        if not ref:
            return False
        try:
            res = db.session.execute(
                update(Payment)
                .where(Payment.id == int(record.id), Payment.order_reference.is_(None))
                .values(order_reference=ref, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning("order_reference_already_taken payment_id=%s order_ref=%s", int(record.id), ref)
            return False
        except Exception:
            db.session.rollback()
            raise
        db.session.refresh(record)
        return int(res.rowcount or 0) == 1

    def transition_to(
        self,
        record: Payment,
        new_status: str,
        note: str,
        *,
        confirmation: ConfirmationResult | None = None,
    ) -> bool:
        target = (new_status or "").strip().lower()
        if target not in PaymentStatus.ALLOWED[PaymentStatus.PENDING]:
            raise ValueError(f"invalid_payment_transition {PaymentStatus.PENDING}->{target}")

        now = datetime.utcnow()
        values = {"status": target, "updated_at": now, **_confirmation_columns(confirmation)}
        try:
            res = db.session.execute(
                update(Payment)
                .where(Payment.id == int(record.id), Payment.status == PaymentStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = int(res.rowcount or 0) == 1
            if applied:
                db.session.add(
                    PaymentLog(
                        payment_id=int(record.id),
                        from_status=PaymentStatus.PENDING,
                        to_status=target,
                        note=(note or "")[:2000],
                        created_at=now,
                    )
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        db.session.refresh(record)
        if not applied:
            logger.info(
                "payment_transition_skipped payment_id=%s status=%s requested=%s",
                int(record.id),
                record.status,
                target,
            )
        return applied

    def mark_refunded(self, record: Payment, note: str) -> bool:
        now = datetime.utcnow()
        try:
            res = db.session.execute(
                update(Payment)
                .where(Payment.id == int(record.id), Payment.status == PaymentStatus.COMPLETED)
                .values(status=PaymentStatus.REFUNDED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            applied = int(res.rowcount or 0) == 1
            if applied:
                db.session.add(
                    PaymentLog(
                        payment_id=int(record.id),
                        from_status=PaymentStatus.COMPLETED,
                        to_status=PaymentStatus.REFUNDED,
                        note=(note or "")[:2000],
                        created_at=now,
                    )
                )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        db.session.refresh(record)
        return applied

    def log_note(self, record: Payment, note: str) -> PaymentLog:
        status = (record.status or "").strip().lower()
        row = PaymentLog(
            payment_id=int(record.id),
            from_status=status,
            to_status=status,
            note=(note or "")[:2000],
            created_at=datetime.utcnow(),
        )
        try:
            db.session.add(row)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return row

    def claim(self, record: Payment) -> bool:
        token = uuid.uuid4().hex
        now = datetime.utcnow()
        stale_before = now - timedelta(seconds=self.lock_ttl_seconds)
        try:
            res = db.session.execute(
                update(Payment)
                .where(
                    Payment.id == int(record.id),
                    Payment.status == PaymentStatus.PENDING,
                    or_(Payment.callback_lock.is_(None), Payment.callback_locked_at < stale_before),
                )
                .values(callback_lock=token, callback_locked_at=now)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        if int(res.rowcount or 0) != 1:
            return False
        self._lock_tokens[int(record.id)] = token
        return True

    def release(self, record: Payment) -> None:
        token = self._lock_tokens.pop(int(record.id), None)
        if not token:
            return
        try:
            db.session.execute(
                update(Payment)
                .where(Payment.id == int(record.id), Payment.callback_lock == token)
                .values(callback_lock=None, callback_locked_at=None)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("payment_lock_release_failed payment_id=%s", int(record.id))

    def refresh(self, record: Payment) -> Payment:
        # End the open transaction so snapshot-isolated backends show commits from other workers.
        db.session.rollback()
        db.session.refresh(record)
        return record
