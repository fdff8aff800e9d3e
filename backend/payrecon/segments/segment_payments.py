from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from payrecon.extensions import db
from payrecon.integrations.payments.base import ProviderRejected, ProviderUnreachable
from payrecon.integrations.payments.factory import build_provider_or_unavailable
from payrecon.models import Payment, PaymentLog, PaymentStatus
from payrecon.services.checkout_service import build_checkout_payload
from payrecon.services.payment_store import SqlPaymentStore
from payrecon.utils.money import to_decimal, whole_units
from payrecon.segments.segment_payment_callbacks import gateway_config

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")
admin_payments_bp = Blueprint("admin_payments_bp", __name__, url_prefix="/api/admin/payments")


def _authorized() -> bool:
    expected = gateway_config().admin_token
    if not expected:
        return False
    supplied = (request.headers.get("X-Admin-Token") or "").strip()
    return bool(supplied) and hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def _forbidden():
    return jsonify({"ok": False, "error": "FORBIDDEN", "message": "Forbidden"}), 403


def _store() -> SqlPaymentStore:
    config = gateway_config()
    return SqlPaymentStore(gateway_id=config.gateway_id, lock_ttl_seconds=config.lock_ttl_seconds)


def _load_payment(payment_id: int) -> Payment | None:
    payment = db.session.get(Payment, int(payment_id))
    if payment is None or payment.gateway_id != gateway_config().gateway_id:
        return None
    return payment


@payments_bp.post("/<int:payment_id>/checkout")
def payment_checkout(payment_id: int):
    config = gateway_config()
    if not config.is_active:
        return jsonify({"ok": False, "error": "INTEGRATION_DISABLED", "message": "payment gateway is not active"}), 503

    payment = _load_payment(payment_id)
    if payment is None:
        return jsonify({"ok": False, "error": "PAYMENT_NOT_FOUND"}), 404
    if not payment.is_pending:
        return jsonify({"ok": False, "error": "PAYMENT_NOT_PENDING", "status": payment.status}), 409

    payload = build_checkout_payload(payment, config, _store())
    return jsonify({"ok": True, **payload}), 200


@payments_bp.get("/<int:payment_id>/status")
def payment_status(payment_id: int):
    payment = _load_payment(payment_id)
    if payment is None:
        return jsonify({"ok": False, "error": "PAYMENT_NOT_FOUND"}), 404
    return jsonify(
        {
            "ok": True,
            "payment_id": int(payment.id),
            "status": payment.status,
            "order_reference": payment.order_reference,
            "amount": float(payment.amount or 0),
            "currency": payment.currency,
            "receipt_url": payment.receipt_url,
        }
    ), 200


@admin_payments_bp.get("/<int:payment_id>")
def admin_payment_detail(payment_id: int):
    if not _authorized():
        return _forbidden()
    payment = _load_payment(payment_id)
    if payment is None:
        return jsonify({"ok": False, "error": "PAYMENT_NOT_FOUND"}), 404
    logs = (
        PaymentLog.query
        .filter_by(payment_id=int(payment.id))
        .order_by(PaymentLog.id.asc())
        .all()
    )
    return jsonify({"ok": True, "payment": payment.to_dict(), "logs": [row.to_dict() for row in logs]}), 200


@admin_payments_bp.post("/<int:payment_id>/cancel")
def admin_cancel_payment(payment_id: int):
    if not _authorized():
        return _forbidden()

    data = request.get_json(silent=True) or {}
    reason = str(data.get("reason") or "").strip()
    if not reason:
        return jsonify({"ok": False, "message": "reason required"}), 400
    amount_raw = data.get("amount")
    if amount_raw is not None and to_decimal(amount_raw) < 0:
        return jsonify({"ok": False, "message": "amount must be >= 0"}), 400

    payment = _load_payment(payment_id)
    if payment is None:
        return jsonify({"ok": False, "error": "PAYMENT_NOT_FOUND"}), 404
    if payment.status != PaymentStatus.COMPLETED or not payment.provider_payment_key:
        return jsonify({"ok": False, "error": "PAYMENT_NOT_CANCELLABLE", "status": payment.status}), 409

    provider = build_provider_or_unavailable(gateway_config())
    try:
        result = provider.cancel(payment_key=payment.provider_payment_key, reason=reason, amount=amount_raw)
    except ProviderUnreachable as e:
        current_app.logger.error("toss_cancel_unreachable payment_id=%s err=%s", int(payment.id), e)
        return jsonify({"ok": False, "error": "PROVIDER_UNREACHABLE", "message": "payment provider unavailable"}), 502
    except ProviderRejected as e:
        current_app.logger.error(
            "toss_cancel_rejected payment_id=%s code=%s message=%s",
            int(payment.id),
            e.code,
            e.message,
        )
        return jsonify({"ok": False, "error": "PROVIDER_REJECTED", "code": e.code, "message": e.message}), 502

    store = _store()
    full = amount_raw is None or whole_units(amount_raw) <= 0
    if full:
        note = f"[{payment.gateway_id}] Payment cancelled via Toss Payments. Reason: {reason}"
        refunded = store.mark_refunded(payment, note)
    else:
        note = f"[{payment.gateway_id}] Partial cancellation of {whole_units(amount_raw)} via Toss Payments. Reason: {reason}"
        store.log_note(payment, note)
        refunded = False
    current_app.logger.info(
        "toss_cancel_applied payment_id=%s full=%s refunded=%s transaction_key=%s",
        int(payment.id),
        full,
        refunded,
        result.transaction_key,
    )
    return jsonify(
        {
            "ok": True,
            "payment_id": int(payment.id),
            "refunded": bool(refunded),
            "status": payment.status,
            "provider_status": result.status,
            "cancel_amount": result.cancel_amount,
            "transaction_key": result.transaction_key,
        }
    ), 200
