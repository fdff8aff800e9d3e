from __future__ import annotations

from flask import Blueprint, current_app, redirect, request

from payrecon.extensions import db
from payrecon.integrations.payments.factory import build_provider_or_unavailable
from payrecon.services.callback_processor import PARAM_ORDER_ID, CallbackProcessor
from payrecon.services.payment_store import SqlPaymentStore
from payrecon.utils.events import record_callback_event
from payrecon.utils.gateway_config import GatewayConfig
from payrecon.utils.observability import note_callback_outcome

callbacks_bp = Blueprint("callbacks_bp", __name__, url_prefix="/api/payments/toss")


def gateway_config() -> GatewayConfig:
    return current_app.extensions["payrecon"]["gateway_config"]


def build_callback_processor(config: GatewayConfig) -> CallbackProcessor:
    return CallbackProcessor(
        store=SqlPaymentStore(gateway_id=config.gateway_id, lock_ttl_seconds=config.lock_ttl_seconds),
        provider=build_provider_or_unavailable(config),
        config=config,
        logger=current_app.logger,
    )


def _redirect(url: str):
    response = redirect(url, code=302)
    response.headers["Cache-Control"] = "no-store"
    return response


@callbacks_bp.get("/callback")
def toss_callback():
    config = gateway_config()
    try:
        processor = build_callback_processor(config)
        outcome = processor.handle(request.args)
    except Exception:
        try:
            db.session.rollback()
        except Exception:
            pass
        current_app.logger.exception(
            "toss_callback_route_failed order_ref=%s",
            (request.args.get(PARAM_ORDER_ID) or "")[:120],
        )
        note_callback_outcome("ROUTE_FAILED", order_reference=request.args.get(PARAM_ORDER_ID) or "")
        return _redirect(config.failed_redirect())

    note_callback_outcome(outcome.reason, order_reference=outcome.order_reference, payment_id=outcome.payment_id)
    record_callback_event(outcome, gateway_id=config.gateway_id)
    return _redirect(outcome.redirect_url)
