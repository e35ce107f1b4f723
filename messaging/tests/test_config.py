import os
import unittest
from unittest import mock

from community_messaging.config import (
    MIN_TYPING_SWEEP_INTERVAL_S,
    MIN_TYPING_TTL_MS,
    MessagingConfig,
    load_config_from_env,
)


class ConfigTests(unittest.TestCase):
    def test_defaults_from_minimal_environment(self):
        with mock.patch.dict(os.environ, {"ECOMMUNITY_API_URL": "https://community.test/api"}, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.api_url, "https://community.test/api")
        self.assertEqual(config.attachment_bucket, "message-media")
        self.assertEqual(config.typing_ttl_ms, 3000)
        self.assertEqual(config.reconcile_interval_s, 10.0)
        self.assertEqual(config.page_size, 50)
        self.assertTrue(config.reconcile_enabled)

    def test_overrides_are_parsed(self):
        env = {
            "ECOMMUNITY_API_URL": "https://community.test/api",
            "ECOMMUNITY_REALTIME_URL": "wss://rt.test/realtime/v1/websocket",
            "ECOMMUNITY_STORAGE_URL": "https://rt.test/storage/v1",
            "ECOMMUNITY_API_KEY": "anon",
            "ECOMMUNITY_ACCESS_TOKEN": "jwt",
            "ECOMMUNITY_ATTACHMENT_BUCKET": "uploads",
            "ECOMMUNITY_TYPING_TTL_MS": "5000",
            "ECOMMUNITY_RECONCILE_INTERVAL_S": "0",
            "ECOMMUNITY_PAGE_SIZE": "20",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.realtime_url, "wss://rt.test/realtime/v1/websocket")
        self.assertEqual(config.attachment_bucket, "uploads")
        self.assertEqual(config.typing_ttl_ms, 5000)
        self.assertEqual(config.page_size, 20)
        self.assertFalse(config.reconcile_enabled)

    def test_missing_api_url_names_variable(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaisesRegex(ValueError, "ECOMMUNITY_API_URL is required"):
                load_config_from_env()

    def test_invalid_numbers_name_variable(self):
        base = {"ECOMMUNITY_API_URL": "https://community.test/api"}
        with mock.patch.dict(os.environ, dict(base, ECOMMUNITY_PAGE_SIZE="many"), clear=True):
            with self.assertRaisesRegex(ValueError, "ECOMMUNITY_PAGE_SIZE must be an integer"):
                load_config_from_env()
        with mock.patch.dict(os.environ, dict(base, ECOMMUNITY_RECONCILE_INTERVAL_S="-1"), clear=True):
            with self.assertRaisesRegex(ValueError, "ECOMMUNITY_RECONCILE_INTERVAL_S must be non-negative"):
                load_config_from_env()

    def test_zero_typing_timers_are_clamped(self):
        env = {
            "ECOMMUNITY_API_URL": "https://community.test/api",
            "ECOMMUNITY_TYPING_TTL_MS": "0",
            "ECOMMUNITY_TYPING_SWEEP_INTERVAL_S": "0",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.typing_ttl_ms, MIN_TYPING_TTL_MS)
        self.assertEqual(config.typing_sweep_interval_s, MIN_TYPING_SWEEP_INTERVAL_S)

    def test_config_is_frozen(self):
        config = MessagingConfig(api_url="https://x")

        with self.assertRaises(Exception):
            config.api_url = "https://y"  # type: ignore[misc]


if __name__ == "__main__":
    unittest.main()
