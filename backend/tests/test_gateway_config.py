from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from payrecon.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from payrecon.integrations.payments.base import ProviderUnreachable
from payrecon.integrations.payments.factory import (
    UnavailablePaymentsProvider,
    build_payments_provider,
    build_provider_or_unavailable,
    payment_health,
)
from payrecon.integrations.payments.mock_provider import MockPaymentsProvider
from payrecon.integrations.payments.toss_provider import TossPaymentsProvider
from payrecon.utils.gateway_config import GatewayConfig, load_gateway_config


class GatewayConfigTestCase(unittest.TestCase):
    def test_load_reads_environment(self):
        env = {
            "PAYMENTS_PROVIDER": "TOSS",
            "PAYMENTS_CURRENCY": "krw",
            "TOSS_SECRET_KEY": "test_sk_abc",
            "TOSS_CLIENT_KEY": "test_ck_abc",
            "TOSS_TIMEOUT_SECONDS": "500",
            "PUBLIC_BASE_URL": "https://shop.example/",
            "CALLBACK_LOCK_WAIT_SECONDS": "2",
            "PAYMENTS_DEBUG": "yes",
        }
        with patch.dict(os.environ, env, clear=False):
            config = load_gateway_config()
        self.assertEqual(config.provider, "toss")
        self.assertEqual(config.currency, "KRW")
        self.assertTrue(config.debug)
        self.assertEqual(config.timeout_seconds, 120.0)
        self.assertEqual(config.public_base_url, "https://shop.example")
        self.assertEqual(config.lock_wait_seconds, 2.0)
        self.assertTrue(config.is_active)

    def test_repr_hides_credentials(self):
        config = GatewayConfig(provider="toss", secret_key="live_sk_secret", client_key="live_ck_secret")
        self.assertNotIn("live_sk_secret", repr(config))
        self.assertNotIn("live_ck_secret", repr(config))

    def test_missing_keys_make_toss_inactive(self):
        config = GatewayConfig(provider="toss", client_key="ck")
        self.assertEqual(config.missing_settings, ["TOSS_SECRET_KEY"])
        self.assertFalse(config.is_active)
        self.assertEqual(payment_health(config)["status"], "misconfigured")

    def test_non_krw_currency_disables_gateway(self):
        config = GatewayConfig(provider="mock", currency="USD")
        self.assertFalse(config.is_active)
        with self.assertRaises(IntegrationDisabledError) as raised:
            build_payments_provider(config)
        self.assertEqual(raised.exception.code, "INTEGRATION_DISABLED")
        self.assertEqual(raised.exception.integration, "toss_card")
        self.assertIn("currency=USD", raised.exception.detail)
        self.assertEqual(payment_health(config)["status"], "disabled")

    def test_success_redirect_formats_template(self):
        config = GatewayConfig(success_url="/done/{payment_id}?ref={order_reference}")
        self.assertEqual(config.success_redirect(payment_id=9, order_reference="pay_9_1"), "/done/9?ref=pay_9_1")

    def test_lock_ttl_outlives_provider_timeout(self):
        env = {"TOSS_TIMEOUT_SECONDS": "90", "CALLBACK_LOCK_TTL_SECONDS": "10"}
        with patch.dict(os.environ, env, clear=False):
            config = load_gateway_config()
        self.assertEqual(config.timeout_seconds, 90.0)
        self.assertGreater(config.lock_ttl_seconds, config.timeout_seconds)

        env = {"TOSS_TIMEOUT_SECONDS": "10", "CALLBACK_LOCK_TTL_SECONDS": "600"}
        with patch.dict(os.environ, env, clear=False):
            self.assertEqual(load_gateway_config().lock_ttl_seconds, 600.0)

    def test_unusable_success_template_falls_back_to_default(self):
        for template in ("/done?ref={reference}", "/done/{0}", "/done/{payment_id"):
            with self.subTest(template=template):
                with patch.dict(os.environ, {"PAYMENT_SUCCESS_URL": template}, clear=False):
                    with self.assertLogs("payrecon.utils.gateway_config", level="WARNING"):
                        config = load_gateway_config()
                self.assertEqual(config.success_url, GatewayConfig.success_url)
                self.assertEqual(config.success_redirect(payment_id=3), "/booking/received?payment_id=3")

        with patch.dict(os.environ, {"PAYMENT_SUCCESS_URL": "/thanks/{payment_id}"}, clear=False):
            self.assertEqual(load_gateway_config().success_url, "/thanks/{payment_id}")


class ProviderFactoryTestCase(unittest.TestCase):
    def test_builds_mock_and_toss(self):
        self.assertIsInstance(build_payments_provider(GatewayConfig(provider="mock")), MockPaymentsProvider)
        toss = build_payments_provider(GatewayConfig(provider="toss", secret_key="sk", client_key="ck"))
        self.assertIsInstance(toss, TossPaymentsProvider)

    def test_unknown_provider_is_misconfigured(self):
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payments_provider(GatewayConfig(provider="paypal"))

    def test_disabled_gateway_yields_unreachable_provider(self):
        provider = build_provider_or_unavailable(GatewayConfig(enabled=False))
        self.assertIsInstance(provider, UnavailablePaymentsProvider)
        with self.assertRaises(ProviderUnreachable):
            provider.confirm(payment_key="pk", order_id="pay_1_1", amount=1000)
        with self.assertRaises(ProviderUnreachable):
            provider.cancel(payment_key="pk", reason="x")


if __name__ == "__main__":
    unittest.main()
