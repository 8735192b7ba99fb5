import asyncio
import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from loguru import logger

from micro_x_chat.__main__ import build_parser, main
from micro_x_chat.app import NON_INTERACTIVE_TITLE, App
from micro_x_chat.app_config import AppConfig
from micro_x_chat.bootstrap import bootstrap_runtime
from micro_x_chat.errors import RateLimitError
from micro_x_chat.logging_config import ConsoleLogConsumer, default_consumers, setup_logging
from tests.providers.fakes import (
    RecordingSleep,
    ScriptedTransport,
    anthropic_stream_events,
    json_response,
    openai_completion,
    sse_response,
)


PROJECT_ROOT = Path(__file__).resolve().parents[1]


class AppTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"app-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _runtime(self, transport: ScriptedTransport, **overrides):
        config = AppConfig(**{"api_key": "key", "data_dir": str(self._tmp_dir / "data"), "max_retries": 1, "retry_delay_ms": 10, **overrides})
        return bootstrap_runtime(config, configure_logging=False, transport=transport.transport, sleep=RecordingSleep())

    def test_non_interactive_request_without_streaming(self) -> None:
        transport = ScriptedTransport(json_response(200, openai_completion("pong")))
        runtime = self._runtime(transport, stream=False, system_message="Answer tersely.")

        async def scenario():
            app = App(runtime)
            await app.start()
            try:
                reply = await app.run_non_interactive("ping")
                sessions = await app.list_sessions()
                messages = await runtime.session_manager.get_messages(sessions[0].id)
                return reply, sessions, messages, runtime.conversations.list_conversations()
            finally:
                await app.shutdown()

        reply, sessions, messages, open_conversations = asyncio.run(scenario())

        self.assertEqual("pong", reply)
        self.assertEqual([NON_INTERACTIVE_TITLE], [s.title for s in sessions])
        self.assertEqual(["ping", "pong"], [m.text_content() for m in messages])
        self.assertEqual([], open_conversations)
        self.assertEqual("Answer tersely.", transport.body()["messages"][0]["content"])

    def test_streaming_reply_is_forwarded_chunk_by_chunk(self) -> None:
        transport = ScriptedTransport(sse_response(anthropic_stream_events("Hel", "lo")))
        runtime = self._runtime(transport, provider="anthropic", model="claude-test", stream=True)
        chunks: list[str] = []

        async def scenario():
            app = App(runtime)
            await app.start()
            try:
                return await app.run_non_interactive("hi", on_chunk=chunks.append)
            finally:
                await app.shutdown()

        reply = asyncio.run(scenario())

        self.assertEqual("Hello", reply)
        self.assertEqual(["Hel", "lo"], chunks)
        self.assertTrue(transport.body()["stream"])

    def test_provider_error_propagates(self) -> None:
        transport = ScriptedTransport(json_response(429, {"error": {"message": "slow down"}}))
        runtime = self._runtime(transport, stream=False, max_retries=0)

        async def scenario():
            app = App(runtime)
            await app.start()
            try:
                with self.assertRaises(RateLimitError):
                    await app.run_non_interactive("ping")
            finally:
                await app.shutdown()

        asyncio.run(scenario())

    def test_shutdown_is_idempotent_and_closes_bus(self) -> None:
        runtime = self._runtime(ScriptedTransport())

        async def scenario():
            app = App(runtime)
            await app.start()
            await app.shutdown()
            await app.shutdown()

        asyncio.run(scenario())
        self.assertTrue(runtime.bus.is_closed)

    def test_completions_are_available(self) -> None:
        runtime = self._runtime(ScriptedTransport())

        async def scenario():
            app = App(runtime)
            await app.start()
            try:
                return await app.complete("git stat")
            finally:
                await app.shutdown()

        items = asyncio.run(scenario())
        self.assertIn("status", [item.title for item in items])


class MainTests(unittest.TestCase):
    def test_parser(self) -> None:
        args = build_parser().parse_args(["-p", "hello", "-q", "--config", "alt.json"])
        self.assertEqual("hello", args.prompt)
        self.assertTrue(args.quiet)
        self.assertEqual("alt.json", args.config)

        defaults = build_parser().parse_args([])
        self.assertIsNone(defaults.prompt)
        self.assertFalse(defaults.quiet)

    def test_missing_config_file_fails_startup(self) -> None:
        missing = PROJECT_ROOT / ".test-artifacts" / f"missing-{uuid4().hex}.json"
        self.assertEqual(1, asyncio.run(main(["--config", str(missing)])))


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"logging-{uuid4().hex}"

    def tearDown(self) -> None:
        logger.remove()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_file_consumer_is_registered_and_described(self) -> None:
        log_path = self._tmp_dir / "logs" / "chat.log"
        descriptions = setup_logging(
            "debug",
            [{"type": "file", "path": str(log_path), "rotation": "1 MB"}, {"type": "carrier-pigeon"}],
        )

        self.assertEqual([f"file ({log_path}, DEBUG, rotation 1 MB)"], descriptions)
        logger.info("written to file")
        logger.remove()
        self.assertIn("written to file", log_path.read_text(encoding="utf-8"))

    def test_quiet_drops_console_consumers(self) -> None:
        log_path = self._tmp_dir / "quiet.log"
        descriptions = setup_logging(
            consumers=[{"type": "console"}, {"type": "file", "path": str(log_path), "level": "warning"}],
            quiet=True,
        )
        self.assertEqual(1, len(descriptions))
        self.assertIn("WARNING", descriptions[0])

    def test_default_consumers(self) -> None:
        self.assertEqual(["console", "file"], [c["type"] for c in default_consumers()])
        self.assertEqual(["file"], [c["type"] for c in default_consumers(quiet=True)])

    def test_console_consumer_rejects_unknown_stream(self) -> None:
        with self.assertRaises(ValueError):
            ConsoleLogConsumer("printer")
        self.assertEqual("console (stdout, INFO)", ConsoleLogConsumer("stdout").describe("INFO"))

    def test_relative_file_paths_resolve_against_base_dir(self) -> None:
        descriptions = setup_logging(consumers=[{"type": "file", "path": "rel.log"}], base_dir=self._tmp_dir)
        self.assertEqual([f"file ({self._tmp_dir / 'rel.log'}, INFO, rotation 10 MB)"], descriptions)
