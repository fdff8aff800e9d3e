from __future__ import annotations

import threading
import unittest
from decimal import Decimal

from payrecon.integrations.payments.base import (
    CardDetails,
    ConfirmationResult,
    PaymentsProvider,
    ProviderRejected,
    ProviderUnreachable,
)
from payrecon.services.callback_processor import CallbackProcessor, CallbackState, Reason
from payrecon.services.payment_store import PaymentStore
from payrecon.utils import order_reference
from payrecon.utils.gateway_config import GatewayConfig

SUCCESS_URL = "/booking/received?payment_id={payment_id}"
FAILED_URL = "/booking/payment-failed"


class _FakeRecord:
    def __init__(self, payment_id: int, amount, *, status: str = "pending", order_reference: str | None = None):
        self.id = int(payment_id)
        self.amount = Decimal(str(amount))
        self.status = status
        self.order_reference = order_reference
        self.confirmation = None


class _FakeStore(PaymentStore):
    def __init__(self, *records: _FakeRecord):
        self.records = {r.id: r for r in records}
        self.notes: list[tuple[int, str, str]] = []
        self.direct_lookups = 0
        self.fallback_lookups = 0
        self.attach_calls = 0
        self.releases = 0
        self.claim_result: bool | None = None
        self.refresh_hook = None
        self._lock = threading.Lock()
        self._held: set[int] = set()

    def find_by_order_reference(self, token):
        self.direct_lookups += 1
        for record in self.records.values():
            if record.order_reference and record.order_reference == token:
                return record
        return None

    def find_latest_pending_by_internal_id(self, internal_id):
        self.fallback_lookups += 1
        record = self.records.get(int(internal_id))
        if record is None or record.status != "pending":
            return None
        return record

    def find_by_internal_id(self, internal_id):
        return self.records.get(int(internal_id))

    def attach_order_reference(self, record, token):
        self.attach_calls += 1
        if record.order_reference:
            return False
        record.order_reference = token
        return True

    def transition_to(self, record, new_status, note, *, confirmation=None):
        with self._lock:
            if record.status != "pending":
                return False
            record.status = new_status
            record.confirmation = confirmation
            self.notes.append((record.id, new_status, note))
            return True

    def claim(self, record):
        if self.claim_result is not None:
            return self.claim_result
        with self._lock:
            if record.id in self._held or record.status != "pending":
                return False
            self._held.add(record.id)
            return True

    def release(self, record):
        self.releases += 1
        with self._lock:
            self._held.discard(record.id)

    def refresh(self, record):
        if self.refresh_hook is not None:
            self.refresh_hook(record)
        return record


class _FakeProvider(PaymentsProvider):
    name = "fake"

    def __init__(self, *, status: str = "DONE", error: Exception | None = None):
        self.status = status
        self.error = error
        self.calls: list[dict] = []
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def confirm(self, *, payment_key, order_id, amount):
        self.calls.append({"payment_key": payment_key, "order_id": order_id, "amount": amount})
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return ConfirmationResult(
            status=self.status,
            payment_key=payment_key,
            order_id=order_id,
            last_transaction_key="tx_1",
            method="카드",
            approved_at="2024-01-01T10:00:00+09:00",
            total_amount=int(amount),
            card=CardDetails(company="현대", number="433012******123*"),
            receipt_url="https://receipt.invalid/1",
            raw={"status": self.status},
        )


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += float(seconds)


def _success(token, amount="50000", payment_key="tgen_pk_1"):
    return {"callback_type": "success", "orderId": token, "paymentKey": payment_key, "amount": amount}


def _fail(token, code="", message=""):
    params = {"callback_type": "fail", "orderId": token}
    if code:
        params["code"] = code
    if message:
        params["message"] = message
    return params


class CallbackProcessorTestCase(unittest.TestCase):
    def _processor(self, store, provider, **config_overrides):
        config = GatewayConfig(success_url=SUCCESS_URL, failed_url=FAILED_URL, **config_overrides)
        clock = _Clock()
        return CallbackProcessor(store=store, provider=provider, config=config, sleep=clock.sleep, clock=clock)

    def test_success_callback_completes_payment(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_success(token))

        self.assertEqual(outcome.reason, Reason.COMPLETED)
        self.assertTrue(outcome.completed)
        self.assertEqual(outcome.redirect_url, "/booking/received?payment_id=42")
        self.assertEqual(record.status, "completed")
        self.assertEqual(record.confirmation.payment_key, "tgen_pk_1")
        self.assertEqual(record.confirmation.last_transaction_key, "tx_1")
        self.assertEqual(provider.calls, [{"payment_key": "tgen_pk_1", "order_id": token, "amount": 50000}])
        self.assertEqual(len(store.notes), 1)
        self.assertIn("tgen_pk_1", store.notes[0][2])
        self.assertTrue(store.notes[0][2].startswith("[toss_card]"))
        self.assertEqual(store.releases, 1)
        self.assertEqual(
            outcome.states,
            [
                CallbackState.RECEIVED,
                CallbackState.PARSED,
                CallbackState.VALIDATED,
                CallbackState.PAYMENT_RESOLVED,
                CallbackState.CONFIRMING,
                CallbackState.COMPLETED,
                CallbackState.REDIRECTED,
            ],
        )

    def test_duplicate_success_is_idempotent(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()
        processor = self._processor(store, provider)

        first = processor.handle(_success(token))
        second = processor.handle(_success(token))

        self.assertEqual(first.reason, Reason.COMPLETED)
        self.assertEqual(second.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(second.redirect_url, "/booking/received?payment_id=42")
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(len(store.notes), 1)

    def test_failure_after_completion_does_not_touch_record(self):
        token = order_reference.generate(5)
        record = _FakeRecord(5, "1000", status="completed", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_fail(token, "USER_CANCEL", "cancelled"))

        self.assertEqual(outcome.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(record.status, "completed")
        self.assertEqual(store.notes, [])
        self.assertEqual(outcome.redirect_url, "/booking/received?payment_id=5")

    def test_amount_mismatch_fails_closed_without_confirm(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_success(token, amount="49999"))

        self.assertEqual(outcome.reason, Reason.AMOUNT_MISMATCH)
        self.assertEqual(record.status, "failed")
        self.assertEqual(provider.calls, [])
        self.assertIn("amount mismatch", store.notes[0][2].lower())
        self.assertIn("50000", store.notes[0][2])
        self.assertIn("49999", store.notes[0][2])
        self.assertEqual(outcome.redirect_url, FAILED_URL)

    def test_amount_too_large_to_round_fails_closed(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_success(token, amount="1" + "0" * 30))

        self.assertEqual(outcome.reason, Reason.AMOUNT_MISMATCH)
        self.assertEqual(record.status, "failed")
        self.assertEqual(provider.calls, [])
        self.assertIn("unparseable", store.notes[0][2])
        self.assertEqual(store.releases, 1)
        self.assertEqual(outcome.redirect_url, FAILED_URL)

    def test_amounts_compare_after_rounding(self):
        token = order_reference.generate(8)
        record = _FakeRecord(8, "49999.50", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_success(token, amount="50000"))

        self.assertEqual(outcome.reason, Reason.COMPLETED)
        self.assertEqual(provider.calls[0]["amount"], 50000)

    def test_provider_rejection_marks_failed_with_code_and_message(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider(error=ProviderRejected("REJECT_CARD_COMPANY", "카드사에서 거절했습니다.", http_status=403))

        outcome = self._processor(store, provider).handle(_success(token))

        self.assertEqual(outcome.reason, Reason.PROVIDER_REJECTED)
        self.assertEqual(record.status, "failed")
        note = store.notes[0][2]
        self.assertIn("REJECT_CARD_COMPANY", note)
        self.assertIn("카드사에서 거절했습니다.", note)
        self.assertEqual(outcome.redirect_url, FAILED_URL)
        self.assertEqual(store.releases, 1)

    def test_provider_unreachable_marks_failed(self):
        token = order_reference.generate(3)
        record = _FakeRecord(3, "1000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider(error=ProviderUnreachable("timed out"))

        outcome = self._processor(store, provider).handle(_success(token, amount="1000"))

        self.assertEqual(outcome.reason, Reason.PROVIDER_UNREACHABLE)
        self.assertEqual(record.status, "failed")
        self.assertEqual(outcome.redirect_url, FAILED_URL)

    def test_unexpected_provider_error_marks_failed(self):
        token = order_reference.generate(3)
        record = _FakeRecord(3, "1000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider(error=KeyError("boom"))

        outcome = self._processor(store, provider).handle(_success(token, amount="1000"))

        self.assertEqual(outcome.reason, Reason.PROVIDER_ERROR)
        self.assertEqual(record.status, "failed")
        self.assertEqual(store.releases, 1)

    def test_status_other_than_done_marks_failed(self):
        token = order_reference.generate(3)
        record = _FakeRecord(3, "1000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider(status="WAITING_FOR_DEPOSIT")

        outcome = self._processor(store, provider).handle(_success(token, amount="1000"))

        self.assertEqual(outcome.reason, Reason.PROVIDER_NOT_DONE)
        self.assertEqual(record.status, "failed")
        self.assertIn("WAITING_FOR_DEPOSIT", store.notes[0][2])

    def test_failure_callback_records_code_and_message(self):
        token = order_reference.generate(11)
        record = _FakeRecord(11, "1000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_fail(token, "PAY_PROCESS_CANCELED", "사용자가 결제를 취소했습니다"))

        self.assertEqual(outcome.reason, Reason.CALLBACK_FAILURE)
        self.assertFalse(outcome.weak_failure)
        self.assertEqual(record.status, "failed")
        self.assertIn("PAY_PROCESS_CANCELED", store.notes[0][2])
        self.assertEqual(provider.calls, [])
        self.assertEqual(outcome.redirect_url, FAILED_URL)

    def test_failure_without_detail_is_weak_but_recorded(self):
        token = order_reference.generate(11)
        record = _FakeRecord(11, "1000", order_reference=token)
        store = _FakeStore(record)

        outcome = self._processor(store, _FakeProvider()).handle(_fail(token))

        self.assertEqual(outcome.reason, Reason.CALLBACK_FAILURE)
        self.assertTrue(outcome.weak_failure)
        self.assertEqual(record.status, "failed")
        self.assertIn("no error detail", store.notes[0][2])

    def test_failure_alias_is_accepted(self):
        token = order_reference.generate(12)
        record = _FakeRecord(12, "1000", order_reference=token)
        store = _FakeStore(record)

        outcome = self._processor(store, _FakeProvider()).handle(
            {"callback_type": "failure", "orderId": token, "code": "X"}
        )

        self.assertEqual(outcome.reason, Reason.CALLBACK_FAILURE)

    def test_fallback_lookup_attaches_reference(self):
        record = _FakeRecord(42, "50000")
        store = _FakeStore(record)
        provider = _FakeProvider(error=ProviderUnreachable("down"))
        processor = self._processor(store, provider)
        token = order_reference.generate(42)

        processor.handle(_success(token))

        self.assertEqual(record.order_reference, token)
        self.assertEqual(store.fallback_lookups, 1)
        self.assertEqual(store.attach_calls, 1)

        outcome = processor.handle(_success(token))
        self.assertEqual(outcome.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(store.fallback_lookups, 1)
        self.assertEqual(len(provider.calls), 1)

    def test_retry_token_resolves_through_payment_id(self):
        first_token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=first_token)
        store = _FakeStore(record)
        provider = _FakeProvider()
        retry_token = f"pay_42_{order_reference.decode(first_token).nonce + 1}"

        processor = self._processor(store, provider)

        outcome = processor.handle(_success(retry_token))

        self.assertEqual(outcome.reason, Reason.COMPLETED)
        self.assertEqual(record.order_reference, first_token)
        self.assertEqual(provider.calls[0]["order_id"], retry_token)

        repeat = processor.handle(_success(retry_token))
        self.assertEqual(repeat.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(repeat.redirect_url, "/booking/received?payment_id=42")
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(len(store.notes), 1)

    def test_retry_token_for_failed_payment_redirects_to_failure_page(self):
        first_token = order_reference.generate(7)
        record = _FakeRecord(7, "1000", status="failed", order_reference=first_token)
        store = _FakeStore(record)
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_success("pay_7_1", amount="1000"))

        self.assertEqual(outcome.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(outcome.redirect_url, FAILED_URL)
        self.assertEqual(outcome.payment_id, 7)
        self.assertEqual(provider.calls, [])
        self.assertEqual(record.status, "failed")

    def test_unresolvable_reference_mutates_nothing(self):
        record = _FakeRecord(1, "1000")
        for token in ("garbage", "pay_999_1700000000000000", "order_1_1"):
            with self.subTest(token=token):
                store = _FakeStore(record)
                provider = _FakeProvider()
                outcome = self._processor(store, provider).handle(_success(token, amount="1000"))
                self.assertEqual(outcome.reason, Reason.PAYMENT_NOT_FOUND)
                self.assertEqual(outcome.redirect_url, FAILED_URL)
                self.assertIsNone(outcome.payment_id)
                self.assertEqual(store.notes, [])
                self.assertEqual(provider.calls, [])
        self.assertEqual(record.status, "pending")
        self.assertIsNone(record.order_reference)

    def test_malformed_callbacks_are_rejected_before_lookup(self):
        token = order_reference.generate(1)
        cases = [
            {"orderId": token},
            {"callback_type": "refund", "orderId": token},
            {"callback_type": "success"},
            {"callback_type": "success", "orderId": token, "amount": "1000"},
            {"callback_type": "success", "orderId": token, "paymentKey": "pk", "amount": "0"},
            {"callback_type": "success", "orderId": token, "paymentKey": "pk", "amount": "abc"},
        ]
        for params in cases:
            with self.subTest(params=params):
                record = _FakeRecord(1, "1000", order_reference=token)
                store = _FakeStore(record)
                outcome = self._processor(store, _FakeProvider()).handle(params)
                self.assertEqual(outcome.reason, Reason.MALFORMED_CALLBACK)
                self.assertEqual(outcome.redirect_url, FAILED_URL)
                self.assertEqual(store.direct_lookups, 0)
                self.assertEqual(record.status, "pending")

    def test_lease_held_elsewhere_waits_for_result(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        store.claim_result = False

        def _finish_elsewhere(rec):
            rec.status = "completed"

        store.refresh_hook = _finish_elsewhere
        provider = _FakeProvider()

        outcome = self._processor(store, provider).handle(_success(token))

        self.assertEqual(outcome.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(outcome.redirect_url, "/booking/received?payment_id=42")
        self.assertEqual(provider.calls, [])
        self.assertEqual(store.releases, 0)

    def test_lease_held_past_wait_reports_in_progress(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        store.claim_result = False
        provider = _FakeProvider()

        outcome = self._processor(store, provider, lock_wait_seconds=1.0).handle(_success(token))

        self.assertEqual(outcome.reason, Reason.IN_PROGRESS)
        self.assertEqual(outcome.redirect_url, FAILED_URL)
        self.assertEqual(record.status, "pending")
        self.assertEqual(provider.calls, [])
        self.assertEqual(store.notes, [])

    def test_transition_collision_reports_already_finalized(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)

        class _RacingProvider(_FakeProvider):
            def confirm(self, **kwargs):
                result = super().confirm(**kwargs)
                record.status = "failed"
                return result

        outcome = self._processor(store, _RacingProvider()).handle(_success(token))

        self.assertEqual(outcome.reason, Reason.ALREADY_FINALIZED)
        self.assertEqual(record.status, "failed")
        self.assertEqual(outcome.redirect_url, FAILED_URL)

    def test_concurrent_duplicate_success_confirms_once(self):
        token = order_reference.generate(42)
        record = _FakeRecord(42, "50000", order_reference=token)
        store = _FakeStore(record)
        provider = _FakeProvider()
        provider.gate = threading.Event()
        config = GatewayConfig(success_url=SUCCESS_URL, failed_url=FAILED_URL, lock_wait_seconds=5.0)
        outcomes = []

        def _run():
            processor = CallbackProcessor(store=store, provider=provider, config=config)
            outcomes.append(processor.handle(_success(token)))

        first = threading.Thread(target=_run)
        first.start()
        self.assertTrue(provider.entered.wait(5))
        second = threading.Thread(target=_run)
        second.start()
        provider.gate.set()
        first.join(10)
        second.join(10)

        self.assertEqual(len(outcomes), 2)
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(len(store.notes), 1)
        self.assertEqual(record.status, "completed")
        self.assertEqual(sorted(o.reason for o in outcomes), sorted([Reason.COMPLETED, Reason.ALREADY_FINALIZED]))
        for outcome in outcomes:
            self.assertEqual(outcome.redirect_url, "/booking/received?payment_id=42")


if __name__ == "__main__":
    unittest.main()
