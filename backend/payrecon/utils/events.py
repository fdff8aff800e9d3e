from __future__ import annotations

import logging

from payrecon.extensions import db
from payrecon.models import CallbackEvent
from payrecon.services.callback_processor import CallbackOutcome
from payrecon.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def record_callback_event(outcome: CallbackOutcome, *, gateway_id: str, request_id: str | None = None) -> CallbackEvent | None:
    """Best-effort audit row for one processed callback.

    Never raises to the caller; the redirect must go out even if this write fails.
    """
    try:
        if not request_id:
            request_id = get_request_id()
        detail = outcome.detail or ""
        if outcome.states:
            detail = f"{detail} states={'>'.join(outcome.states)}".strip()
        event = CallbackEvent(
            gateway_id=(gateway_id or "")[:64],
            kind=(outcome.kind or "")[:16] or None,
            order_reference=(outcome.order_reference or "")[:64] or None,
            payment_id=outcome.payment_id,
            outcome=(outcome.reason or "unknown")[:32],
            weak_failure=bool(outcome.weak_failure),
            request_id=(request_id or "").strip()[:64] or None,
            detail=detail[:2000] or None,
        )
        db.session.add(event)
        db.session.commit()
        return event
    except Exception:
        try:
            db.session.rollback()
        except Exception:
            pass
        logger.warning("callback_event_record_failed order_ref=%s", outcome.order_reference, exc_info=True)
        return None
