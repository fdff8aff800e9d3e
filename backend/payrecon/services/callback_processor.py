from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Mapping

from payrecon.integrations.payments.base import (
    ConfirmationResult,
    PaymentsProvider,
    ProviderRejected,
    ProviderUnreachable,
)
from payrecon.models.payment import PaymentStatus
from payrecon.services.payment_store import PaymentStore
from payrecon.utils import order_reference
from payrecon.utils.gateway_config import GatewayConfig
from payrecon.utils.money import to_decimal, whole_units

PARAM_ORDER_ID = "orderId"
PARAM_CALLBACK_TYPE = "callback_type"
PARAM_PAYMENT_KEY = "paymentKey"
PARAM_AMOUNT = "amount"
PARAM_ERROR_CODE = "code"
PARAM_ERROR_MESSAGE = "message"

_LOCK_POLL_SECONDS = 0.25


class CallbackKind:
    SUCCESS = "success"
    FAILURE = "fail"

    ALIASES = {"success": SUCCESS, "fail": FAILURE, "failure": FAILURE}


class CallbackState:
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    VALIDATED = "VALIDATED"
    PAYMENT_RESOLVED = "PAYMENT_RESOLVED"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REDIRECTED = "REDIRECTED"


class Reason:
    COMPLETED = "COMPLETED"
    CALLBACK_FAILURE = "CALLBACK_FAILURE"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    PROVIDER_UNREACHABLE = "PROVIDER_UNREACHABLE"
    PROVIDER_REJECTED = "PROVIDER_REJECTED"
    PROVIDER_NOT_DONE = "PROVIDER_NOT_DONE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    ALREADY_FINALIZED = "ALREADY_FINALIZED"
    IN_PROGRESS = "IN_PROGRESS"
    MALFORMED_CALLBACK = "MALFORMED_CALLBACK"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"


class CallbackError(RuntimeError):
    pass


class MalformedCallback(CallbackError):
    pass


class PaymentNotFound(CallbackError):
    pass


class AmountMismatch(CallbackError):
    def __init__(self, expected: int, received: int | None):
        self.expected = int(expected)
        self.received = int(received) if received is not None else None
        shown = self.received if self.received is not None else "unparseable"
        super().__init__(f"Payment amount mismatch. Expected: {self.expected}, Received: {shown}.")


@dataclass
class CallbackEnvelope:
    kind: str
    order_reference: str
    payment_key: str = ""
    claimed_amount: Decimal = Decimal("0")
    error_code: str = ""
    error_message: str = ""
    weak_failure: bool = False


@dataclass
class CallbackOutcome:
    reason: str
    redirect_url: str
    kind: str = ""
    order_reference: str = ""
    payment_id: int | None = None
    status: str | None = None
    weak_failure: bool = False
    detail: str = ""
    states: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED


def _param(params: Mapping, key: str, limit: int = 500) -> str:
    value = params.get(key)
    if value is None:
        return ""
    return str(value).strip()[:limit]


def _is_pending(record) -> bool:
    return (getattr(record, "status", "") or "").strip().lower() == PaymentStatus.PENDING


class CallbackProcessor:
    """Drives one provider redirect callback to a terminal ledger state and a redirect.

    Instances hold only collaborators and configuration; each ``handle`` call
    is independent. Concurrent callbacks for the same payment are serialized
    by the store's lease and compare-and-set transitions, never by state kept
    here.
    """

    def __init__(
        self,
        *,
        store: PaymentStore,
        provider: PaymentsProvider,
        config: GatewayConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.provider = provider
        self.config = config
        self.logger = logger or logging.getLogger("payrecon.callbacks")
        self._sleep = sleep
        self._clock = clock

    def handle(self, params: Mapping) -> CallbackOutcome:
        states = [CallbackState.RECEIVED]
        raw_ref = _param(params, PARAM_ORDER_ID, 120)
        try:
            envelope = self.parse(params)
            states.append(CallbackState.PARSED)
            self.validate(envelope)
            states.append(CallbackState.VALIDATED)
        except MalformedCallback as exc:
            self.logger.error("toss_callback_invalid order_ref=%s err=%s", raw_ref, exc)
            return self._finish(Reason.MALFORMED_CALLBACK, None, None, states, detail=str(exc), order_ref=raw_ref)

        try:
            record = self.retrieve_payment(envelope)
        except PaymentNotFound as exc:
            self.logger.error(
                "toss_callback_payment_not_found order_ref=%s payment_id=%s err=%s",
                envelope.order_reference,
                order_reference.parse(envelope.order_reference),
                exc,
            )
            return self._finish(Reason.PAYMENT_NOT_FOUND, envelope, None, states, detail=str(exc))
        states.append(CallbackState.PAYMENT_RESOLVED)
        return self.process(envelope, record, states=states)

    def parse(self, params: Mapping) -> CallbackEnvelope:
        kind_raw = _param(params, PARAM_CALLBACK_TYPE, 32).lower()
        kind = CallbackKind.ALIASES.get(kind_raw)
        if kind is None:
            raise MalformedCallback(f"unknown callback_type {kind_raw!r}" if kind_raw else "missing callback_type")
        ref = _param(params, PARAM_ORDER_ID, 120)
        if not ref:
            raise MalformedCallback("missing orderId")

        if kind == CallbackKind.SUCCESS:
            envelope = CallbackEnvelope(
                kind=kind,
                order_reference=ref,
                payment_key=_param(params, PARAM_PAYMENT_KEY, 200),
                claimed_amount=to_decimal(_param(params, PARAM_AMOUNT, 32)),
            )
        else:
            envelope = CallbackEnvelope(
                kind=kind,
                order_reference=ref,
                error_code=_param(params, PARAM_ERROR_CODE, 100),
                error_message=_param(params, PARAM_ERROR_MESSAGE, 500),
            )
        self.logger.debug("toss_callback_parsed kind=%s order_ref=%s", envelope.kind, envelope.order_reference)
        return envelope

    def validate(self, envelope: CallbackEnvelope) -> None:
        if envelope.kind == CallbackKind.SUCCESS:
            if not envelope.payment_key:
                raise MalformedCallback("success callback without paymentKey")
            if envelope.claimed_amount <= 0:
                raise MalformedCallback("success callback with non-positive amount")
            return

        # Missing provider detail must never stop a failure from being recorded.
        if not envelope.error_code and not envelope.error_message:
            envelope.weak_failure = True
            self.logger.warning("toss_callback_fail_without_detail order_ref=%s", envelope.order_reference)
        elif not envelope.error_code:
            self.logger.warning("toss_callback_fail_without_code order_ref=%s using_message=true", envelope.order_reference)

    def retrieve_payment(self, envelope: CallbackEnvelope):
        ref = envelope.order_reference
        record = self.store.find_by_order_reference(ref)
        if record is not None:
            self.logger.debug("toss_callback_payment_resolved payment_id=%s via=order_reference", record.id)
            return record

        internal_id = order_reference.parse(ref)
        if internal_id is None:
            raise PaymentNotFound("order reference is not decodable")

        record = self.store.find_latest_pending_by_internal_id(internal_id)
        if record is None:
            # Retry tokens are never attached; repeats of one land here once the payment is final.
            record = self.store.find_by_internal_id(internal_id)
            if record is None or _is_pending(record):
                raise PaymentNotFound(f"no pending payment for payment_id={internal_id}")
            self.logger.info(
                "toss_callback_payment_resolved payment_id=%s via=payment_id status=%s order_ref=%s",
                record.id,
                record.status,
                ref,
            )
            return record

        if self.store.attach_order_reference(record, ref):
            self.logger.info("toss_callback_reference_attached payment_id=%s order_ref=%s", record.id, ref)
        else:
            self.logger.info(
                "toss_callback_reference_kept payment_id=%s existing=%s incoming=%s",
                record.id,
                getattr(record, "order_reference", None),
                ref,
            )
        return record

    def process(self, envelope: CallbackEnvelope, record, *, states: list[str] | None = None) -> CallbackOutcome:
        states = states if states is not None else [CallbackState.PAYMENT_RESOLVED]

        if not _is_pending(record):
            self.logger.warning(
                "toss_callback_already_processed payment_id=%s status=%s order_ref=%s",
                record.id,
                record.status,
                envelope.order_reference,
            )
            return self._finish(Reason.ALREADY_FINALIZED, envelope, record, states)

        if not self.store.claim(record):
            record = self._wait_for_other_callback(record)
            reason = Reason.IN_PROGRESS if _is_pending(record) else Reason.ALREADY_FINALIZED
            self.logger.warning(
                "toss_callback_concurrent_delivery payment_id=%s status=%s order_ref=%s",
                record.id,
                record.status,
                envelope.order_reference,
            )
            return self._finish(reason, envelope, record, states)

        try:
            if envelope.kind == CallbackKind.SUCCESS:
                reason, detail = self._process_success(envelope, record, states)
            else:
                reason, detail = self._process_failure(envelope, record, states)
        finally:
            self.store.release(record)
        return self._finish(reason, envelope, record, states, detail=detail)

    def _process_success(self, envelope: CallbackEnvelope, record, states: list[str]) -> tuple[str, str]:
        try:
            received = self._verify_amount(record, envelope)
        except AmountMismatch as exc:
            self.logger.error(
                "toss_callback_amount_mismatch payment_id=%s order_ref=%s expected=%s received=%s",
                record.id,
                envelope.order_reference,
                exc.expected,
                exc.received,
            )
            return self._transition(record, PaymentStatus.FAILED, str(exc), states, Reason.AMOUNT_MISMATCH), str(exc)

        states.append(CallbackState.CONFIRMING)
        self.logger.info(
            "toss_confirm_started payment_id=%s order_ref=%s amount=%s",
            record.id,
            envelope.order_reference,
            received,
        )
        try:
            result = self.provider.confirm(
                payment_key=envelope.payment_key,
                order_id=envelope.order_reference,
                amount=received,
            )
        except ProviderUnreachable as exc:
            note = f"Toss Payments confirmation failed: provider unreachable ({exc})."
            self.logger.error(
                "toss_confirm_unreachable payment_id=%s order_ref=%s err=%s",
                record.id,
                envelope.order_reference,
                exc,
            )
            return self._transition(record, PaymentStatus.FAILED, note, states, Reason.PROVIDER_UNREACHABLE), note
        except ProviderRejected as exc:
            note = f"Toss Payments confirmation failed. Code: {exc.code}, Message: {exc.message}"
            self.logger.error(
                "toss_confirm_rejected payment_id=%s order_ref=%s code=%s message=%s http_status=%s",
                record.id,
                envelope.order_reference,
                exc.code,
                exc.message,
                exc.http_status,
            )
            return self._transition(record, PaymentStatus.FAILED, note, states, Reason.PROVIDER_REJECTED), note
        except Exception as exc:
            # A record left pending blocks retries through the fallback lookup; fail it instead.
            note = f"An unexpected error occurred during payment confirmation: {type(exc).__name__}"
            self.logger.exception(
                "toss_confirm_unexpected_error payment_id=%s order_ref=%s",
                record.id,
                envelope.order_reference,
            )
            return self._transition(record, PaymentStatus.FAILED, note, states, Reason.PROVIDER_ERROR), note

        return self._apply_confirmation(envelope, record, result, states)

    def _apply_confirmation(
        self,
        envelope: CallbackEnvelope,
        record,
        result: ConfirmationResult,
        states: list[str],
    ) -> tuple[str, str]:
        if (result.status or "").upper() != self.provider.DONE:
            note = f"Toss Payments confirmation failed. Code: CONFIRM_FAILED, Message: provider status {result.status or 'UNKNOWN'}"
            self.logger.error(
                "toss_confirm_not_done payment_id=%s order_ref=%s provider_status=%s",
                record.id,
                envelope.order_reference,
                result.status,
            )
            return self._transition(record, PaymentStatus.FAILED, note, states, Reason.PROVIDER_NOT_DONE), note

        if not result.payment_key:
            result.payment_key = envelope.payment_key
        note = f"Payment successfully confirmed via Toss Payments. Payment Key: {result.payment_key}"
        reason = self._transition(
            record,
            PaymentStatus.COMPLETED,
            note,
            states,
            Reason.COMPLETED,
            confirmation=result,
        )
        if reason == Reason.COMPLETED:
            self.logger.info(
                "toss_payment_completed payment_id=%s order_ref=%s transaction_key=%s",
                record.id,
                envelope.order_reference,
                result.last_transaction_key,
            )
        return reason, note

    def _process_failure(self, envelope: CallbackEnvelope, record, states: list[str]) -> tuple[str, str]:
        note = (
            "Payment failed via Toss Payments callback. "
            f"Code: {envelope.error_code or '-'}, Message: {envelope.error_message or '-'}"
        )
        if envelope.weak_failure:
            note += " (no error detail supplied by provider)"
        self.logger.warning(
            "toss_callback_payment_failed payment_id=%s order_ref=%s code=%s message=%s",
            record.id,
            envelope.order_reference,
            envelope.error_code,
            envelope.error_message,
        )
        return self._transition(record, PaymentStatus.FAILED, note, states, Reason.CALLBACK_FAILURE), note

    def _verify_amount(self, record, envelope: CallbackEnvelope) -> int:
        expected = whole_units(record.amount)
        try:
            received = whole_units(envelope.claimed_amount)
        except (InvalidOperation, OverflowError):
            # Too many digits to round at context precision.
            raise AmountMismatch(expected, None)
        if expected != received:
            raise AmountMismatch(expected, received)
        return received

    def _transition(
        self,
        record,
        status: str,
        note: str,
        states: list[str],
        reason: str,
        *,
        confirmation: ConfirmationResult | None = None,
    ) -> str:
        applied = self.store.transition_to(
            record,
            status,
            f"[{self.config.gateway_id}] {note}",
            confirmation=confirmation,
        )
        if not applied:
            self.logger.warning(
                "toss_callback_transition_collision payment_id=%s requested=%s current=%s",
                record.id,
                status,
                getattr(record, "status", None),
            )
            return Reason.ALREADY_FINALIZED
        states.append(CallbackState.COMPLETED if status == PaymentStatus.COMPLETED else CallbackState.FAILED)
        return reason

    def _wait_for_other_callback(self, record):
        deadline = self._clock() + float(self.config.lock_wait_seconds)
        record = self.store.refresh(record)
        while _is_pending(record) and self._clock() < deadline:
            self._sleep(_LOCK_POLL_SECONDS)
            record = self.store.refresh(record)
        return record

    def _finish(
        self,
        reason: str,
        envelope: CallbackEnvelope | None,
        record,
        states: list[str],
        *,
        detail: str = "",
        order_ref: str = "",
    ) -> CallbackOutcome:
        status = (getattr(record, "status", "") or "").strip().lower() if record is not None else None
        ref = envelope.order_reference if envelope is not None else order_ref
        if status == PaymentStatus.COMPLETED:
            url = self.config.success_redirect(
                payment_id=record.id,
                order_reference=getattr(record, "order_reference", None) or ref,
            )
        else:
            url = self.config.failed_redirect()
        states.append(CallbackState.REDIRECTED)
        self.logger.debug(
            "toss_callback_redirect payment_id=%s status=%s reason=%s",
            getattr(record, "id", None),
            status,
            reason,
        )
        return CallbackOutcome(
            reason=reason,
            redirect_url=url,
            kind=envelope.kind if envelope is not None else "",
            order_reference=ref,
            payment_id=int(record.id) if record is not None else None,
            status=status,
            weak_failure=bool(envelope.weak_failure) if envelope is not None else False,
            detail=detail,
            states=states,
        )
