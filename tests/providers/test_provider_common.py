import asyncio
import unittest

from micro_x_chat.errors import ApiError, ConfigError, HttpError, JsonError, RateLimitError
from micro_x_chat.provider import LLMProvider, ProviderConfig, available_providers, create_provider
from micro_x_chat.providers.common import (
    MAX_BACKOFF_MS,
    ClientOptions,
    backoff_delay_ms,
    call_with_retry,
    decode_payload,
    expect_object,
    extract_error_message,
    payload_shape,
    sanitize_content,
    token_count,
)
from micro_x_chat.providers.ollama_provider import OllamaProvider
from tests.providers.fakes import RecordingSleep, ScriptedTransport


class BackoffTests(unittest.TestCase):
    def test_delay_doubles_per_attempt(self) -> None:
        self.assertEqual(1000, backoff_delay_ms(0, 1000, jitter=0.0))
        self.assertEqual(2000, backoff_delay_ms(1, 1000, jitter=0.0))
        self.assertEqual(6000, backoff_delay_ms(2, 1000, jitter=0.5))

    def test_delay_is_capped(self) -> None:
        self.assertEqual(MAX_BACKOFF_MS, backoff_delay_ms(10, 1000, jitter=0.9))

    def test_random_jitter_stays_in_range(self) -> None:
        for _ in range(50):
            delay = backoff_delay_ms(1, 500)
            self.assertTrue(1000 <= delay < 2000)


class CallWithRetryTests(unittest.TestCase):
    def test_retries_only_retryable_errors(self) -> None:
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise HttpError("503: busy", status=503)
            return "ok"

        sleep = RecordingSleep()
        result = asyncio.run(call_with_retry(flaky, ClientOptions(max_retries=3, retry_delay_ms=100), sleep=sleep))
        self.assertEqual("ok", result)
        self.assertEqual(3, len(calls))
        self.assertEqual(2, len(sleep.delays))

    def test_non_retryable_error_propagates_immediately(self) -> None:
        calls = []

        async def broken():
            calls.append(1)
            raise ApiError("400: bad request")

        sleep = RecordingSleep()
        with self.assertRaises(ApiError):
            asyncio.run(call_with_retry(broken, ClientOptions(max_retries=3), sleep=sleep))
        self.assertEqual(1, len(calls))
        self.assertEqual([], sleep.delays)

    def test_zero_retries_means_single_attempt(self) -> None:
        calls = []

        async def limited():
            calls.append(1)
            raise RateLimitError("429: slow down")

        with self.assertRaises(RateLimitError):
            asyncio.run(call_with_retry(limited, ClientOptions(max_retries=0), sleep=RecordingSleep()))
        self.assertEqual(1, len(calls))


class ErrorMessageTests(unittest.TestCase):
    def test_extracts_nested_error_message(self) -> None:
        self.assertEqual("429: slow down", extract_error_message(429, '{"error": {"message": "slow down"}}'))

    def test_extracts_plain_error_string(self) -> None:
        self.assertEqual("404: model not found", extract_error_message(404, '{"error": "model not found"}'))

    def test_falls_back_to_raw_body(self) -> None:
        self.assertEqual("502: Bad Gateway", extract_error_message(502, "Bad Gateway"))

    def test_sanitize_content_keeps_newlines_and_tabs(self) -> None:
        self.assertEqual("a\tb\nc", sanitize_content("a\tb\x00\nc\x1b"))


class PayloadHelperTests(unittest.TestCase):
    def test_decode_payload_wraps_syntax_errors(self) -> None:
        self.assertEqual({"a": 1}, decode_payload('{"a": 1}'))
        with self.assertRaises(JsonError) as ctx:
            decode_payload("{not json")
        self.assertIsInstance(ctx.exception.cause, ValueError)

    def test_expect_object(self) -> None:
        self.assertEqual({}, expect_object({}, "body"))
        with self.assertRaises(JsonError) as ctx:
            expect_object([1], "body")
        self.assertIn("got list", str(ctx.exception))

    def test_token_count(self) -> None:
        self.assertEqual(0, token_count(None))
        self.assertEqual(7, token_count(7))
        with self.assertRaises(ValueError):
            token_count("lots")

    def test_payload_shape_converts_layout_errors(self) -> None:
        with self.assertRaises(JsonError) as ctx:
            with payload_shape("chunk"):
                [].get("x")
        self.assertIn("Unexpected chunk layout", str(ctx.exception))
        with self.assertRaises(ApiError):
            with payload_shape("chunk"):
                raise ApiError("No choices in response")


class CreateProviderTests(unittest.TestCase):
    def test_available_providers(self) -> None:
        self.assertEqual(["openai", "anthropic", "ollama"], available_providers())

    def test_creates_driver_by_tag(self) -> None:
        transport = ScriptedTransport()
        provider = create_provider(ProviderConfig(provider_type=" Ollama ", model="llama3"), transport=transport.transport)
        try:
            self.assertIsInstance(provider, OllamaProvider)
            self.assertIsInstance(provider, LLMProvider)
            self.assertEqual("ollama", provider.name)
            self.assertEqual("llama3", provider.model)
        finally:
            asyncio.run(provider.aclose())

    def test_unknown_tag_is_config_error(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            create_provider(ProviderConfig(provider_type="gemini"))
        self.assertIn("gemini", str(ctx.exception))

    def test_openai_without_key_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            create_provider(ProviderConfig(provider_type="openai", api_key=""))
