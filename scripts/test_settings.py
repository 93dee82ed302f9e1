from __future__ import annotations

import io
import json
import logging
import os
import unittest
from unittest.mock import patch

from modules.bot_runtime.logging import JsonFormatter, setup_logger
from modules.bot_runtime.settings import AppSettings, normalize_retries, parse_owner_limits
from modules.common.logging import log_event, sanitize_text, sanitize_value

BASE_ENV = {
    "RPC_URLS": "https://rpc-a.example/key123, https://rpc-b.example",
    "SIGNER_PRIVATE_KEYS": "0x" + "11" * 32,
    "ARB_ADDRESS": "0x" + "E1" * 20,
    "WRAPPED_NATIVE_TOKEN": "0x" + "F1" * 20,
    "ROUTE_API_URL": "https://router.example/route",
    "ORDERS_URL": "https://indexer.example/orders",
}


class AppSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, BASE_ENV, clear=True):
            settings = AppSettings.from_env()

        settings.validate()
        self.assertEqual(settings.rpc_urls, ["https://rpc-a.example/key123", "https://rpc-b.example"])
        self.assertEqual(settings.arb_address, "0x" + "e1" * 20)
        self.assertEqual(settings.hops, 7)
        self.assertEqual(settings.retries, 1)
        self.assertEqual(settings.gas_coverage_percentage, 100)
        self.assertTrue(settings.dry_run)
        self.assertEqual(settings.round_timeout_seconds, 0.0)
        self.assertEqual(settings.multicall_address, "0xca11bde05977b3631167028862be2a173976ca11")

    def test_numeric_values_are_clamped(self) -> None:
        env = {
            **BASE_ENV,
            "HOPS": "0",
            "RETRIES": "9",
            "GAS_COVERAGE_PERCENTAGE": "-5",
            "ERROR_BACKOFF_SECONDS": "0",
            "RPC_TIMEOUT_SECONDS": "abc",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        self.assertEqual(settings.hops, 1)
        self.assertEqual(settings.retries, 3)
        self.assertEqual(settings.gas_coverage_percentage, 0)
        self.assertEqual(settings.error_backoff_seconds, 0.2)
        self.assertEqual(settings.rpc_timeout_seconds, 10.0)

    def test_validate_lists_missing_keys(self) -> None:
        with patch.dict(os.environ, {"RPC_URLS": "https://rpc.example"}, clear=True):
            settings = AppSettings.from_env()

        with self.assertRaises(ValueError) as ctx:
            settings.validate()

        self.assertIn("SIGNER_PRIVATE_KEYS", str(ctx.exception))
        self.assertNotIn("RPC_URLS", str(ctx.exception))

    def test_private_keys_stay_out_of_repr(self) -> None:
        with patch.dict(os.environ, BASE_ENV, clear=True):
            settings = AppSettings.from_env()

        self.assertNotIn("11" * 32, repr(settings))

    def test_solver_config_carries_tuning(self) -> None:
        env = {**BASE_ENV, "MAX_RATIO": "yes", "GAS_PRICE_MULTIPLIER": "120", "CHAIN_ID": "137"}
        with patch.dict(os.environ, env, clear=True):
            config = AppSettings.from_env().solver_config()

        self.assertTrue(config.max_ratio)
        self.assertEqual(config.gas_price_multiplier, 120)
        self.assertEqual(config.chain_id, 137)
        self.assertEqual(config.native_token, "0x" + "f1" * 20)

    def test_owner_limits_parsing(self) -> None:
        limits = parse_owner_limits("0xAB=5, bad, 0xcd=0, 0xef=x, 0x12=3")

        self.assertEqual(limits, {"0xab": 5, "0x12": 3})

    def test_retries_bounds(self) -> None:
        self.assertEqual(normalize_retries(None), 1)
        self.assertEqual(normalize_retries("2"), 2)
        self.assertEqual(normalize_retries("-1"), 1)


class LogSanitizingTests(unittest.TestCase):
    def test_rpc_urls_lose_path_and_query(self) -> None:
        text = sanitize_text("failed https://rpc.example/v2/secret?apikey=abc.")

        self.assertEqual(text, "failed https://rpc.example/.")

    def test_secret_fields_are_masked(self) -> None:
        value = sanitize_value({"private_key": "0xdead", "nested": {"mnemonic": "a b c"}, "ok": 1})

        self.assertEqual(value, {"private_key": "***", "nested": {"mnemonic": "***"}, "ok": 1})

    def test_wei_sized_ints_become_strings(self) -> None:
        self.assertEqual(sanitize_value(10**18), str(10**18))
        self.assertEqual(sanitize_value(10), 10)
        self.assertIs(sanitize_value(True), True)

    def test_json_formatter_includes_extra_fields(self) -> None:
        record = logging.LogRecord("orderbook_solver", logging.INFO, __file__, 1, "hello", None, None)
        record.event = "round_completed"
        record.avg_gas_cost = 10**18

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["event"], "round_completed")
        self.assertEqual(payload["avg_gas_cost"], str(10**18))
        self.assertEqual(payload["message"], "hello")

    def test_setup_logger_writes_sanitized_json_lines(self) -> None:
        stream = io.StringIO()
        logger = setup_logger("debug", stream=stream)

        log_event(
            logger,
            level="debug",
            event="rpc_attempt_failed",
            message="RPC attempt failed",
            url="https://rpc.example/v2/secret",
            private_key="0xdead",
        )

        payload = json.loads(stream.getvalue().strip())
        self.assertEqual(payload["level"], "DEBUG")
        self.assertEqual(payload["event"], "rpc_attempt_failed")
        self.assertEqual(payload["url"], "https://rpc.example/")
        self.assertEqual(payload["private_key"], "***")


if __name__ == "__main__":
    unittest.main()
