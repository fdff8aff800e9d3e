from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from datetime import datetime
from urllib.parse import urlsplit

from flask import g, has_request_context, request


def _hash_ip(ip: str, salt: str) -> str:
    raw = f"{salt}:{ip or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "")


def init_sentry(app) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        traces_rate_raw = (os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0.0").strip()
        try:
            traces_rate = float(traces_rate_raw)
        except ValueError:
            traces_rate = 0.0

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("PAYRECON_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or os.getenv("SOURCE_VERSION") or "unknown"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=max(0.0, min(traces_rate, 1.0)),
            before_send=_before_send_scrub,
        )
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def _before_send_scrub(event, hint):
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in ("authorization", "x-admin-token", "cookie", "set-cookie"):
            headers[key] = "[REDACTED]"
    req["headers"] = headers
    # paymentKey in callback query strings is a bearer-like secret for the confirm call.
    if isinstance(req.get("query_string"), str) and "paymentKey=" in req["query_string"]:
        req["query_string"] = "[REDACTED]"
    event["request"] = req
    return event


def _tag_sentry_request(rid: str) -> None:
    try:
        import sentry_sdk

        sentry_sdk.set_tag("request_id", rid)
    except Exception:
        pass


def note_callback_outcome(reason: str, *, order_reference: str = "", payment_id=None) -> None:
    """Attach the callback result to the current request's access log line."""
    if not has_request_context():
        return
    g.callback_outcome = {
        "reason": reason,
        "order_ref": (order_reference or "")[:64],
        "payment_id": payment_id,
    }


def install_request_observers(app) -> None:
    @app.before_request
    def _request_observer_begin():
        rid = (request.headers.get("X-Request-Id") or "").strip()[:64]
        if not rid:
            rid = uuid.uuid4().hex
        g.request_id = rid
        g.request_started_at = time.perf_counter()
        _tag_sentry_request(rid)

    @app.after_request
    def _request_observer_end(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        latency_ms = None
        if started is not None:
            latency_ms = round((time.perf_counter() - float(started)) * 1000.0, 2)
        # Never log query strings; callback URLs carry paymentKey.
        payload = {
            "ts": datetime.utcnow().isoformat(),
            "request_id": rid,
            "path": request.path,
            "method": request.method,
            "status": int(response.status_code),
            "latency_ms": latency_ms,
            "ip_hash": _hash_ip(request.headers.get("X-Forwarded-For", request.remote_addr or ""), app.config.get("SECRET_KEY", "payrecon")),
            "user_agent": (request.user_agent.string or "")[:180],
        }
        outcome = getattr(g, "callback_outcome", None)
        if outcome:
            payload["callback"] = outcome
        if 300 <= int(response.status_code) < 400:
            payload["redirect_path"] = urlsplit(response.headers.get("Location") or "").path
        app.logger.info(json.dumps(payload))
        return response
