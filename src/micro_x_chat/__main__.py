import argparse
import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from micro_x_chat import __version__
from micro_x_chat.app import App
from micro_x_chat.app_config import load_app_config
from micro_x_chat.bootstrap import bootstrap_runtime
from micro_x_chat.conversation import Conversation
from micro_x_chat.errors import AgentError

HELP_TEXT = """Commands:
  /sessions          list recent sessions
  /new [title]       start a new session
  /stats             show statistics for the current session
  /complete <text>   show completions for <text>
  exit | quit        leave"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="micro-x-chat", description="Terminal chat with an LLM provider.")
    parser.add_argument("-p", "--prompt", help="send a single prompt, print the reply and exit")
    parser.add_argument("-q", "--quiet", action="store_true", help="no console logging, print only the reply")
    parser.add_argument("--config", help="path to a config.json file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _print_chunk(chunk: str) -> None:
    print(chunk, end="", flush=True)


async def _handle_command(app: App, conversation: Conversation, command: str) -> Conversation:
    name, _, arg = command.partition(" ")
    arg = arg.strip()

    if name == "/sessions":
        for session in await app.list_sessions():
            marker = "*" if session.id == conversation.session_id else " "
            print(f"{marker} {session.id}  {session.title}  ({session.message_count} messages)")
    elif name == "/new":
        app.runtime.conversations.end_conversation(conversation.session_id)
        conversation = await app.new_conversation(arg or "Interactive session")
        print(f"New session: {conversation.session_id}")
    elif name == "/stats":
        stats = await app.runtime.session_manager.get_session_stats(conversation.session_id)
        if stats is not None:
            usage = stats.token_usage
            print(
                f"Session {stats.session_id}: {stats.message_count} messages, "
                f"tokens in/out/total {usage.input_tokens}/{usage.output_tokens}/{usage.total_tokens}"
            )
    elif name == "/complete":
        for item in await app.complete(arg):
            description = f"  - {item.description}" if item.description else ""
            print(f"  {item.title}{description}")
    else:
        print(HELP_TEXT)
    return conversation


async def _repl(app: App) -> None:
    conversation = await app.new_conversation("Interactive session")
    runtime = app.runtime

    print(f"micro-x-chat {__version__} (type 'exit' to quit, '/help' for commands)")
    print(f"Provider: {runtime.provider.name} ({runtime.provider.model})")
    print(f"Session: {conversation.session_id}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    while True:
        try:
            user_input = await asyncio.to_thread(input, "you> ")
        except (EOFError, KeyboardInterrupt):
            break

        trimmed = user_input.strip()
        if trimmed in ("exit", "quit"):
            break
        if not trimmed:
            continue
        if trimmed.startswith("/"):
            conversation = await _handle_command(app, conversation, trimmed)
            continue

        print("assistant> ", end="", flush=True)
        try:
            reply = await app.send(conversation, trimmed, _print_chunk)
            if not app.streaming:
                print(reply, end="")
            print("\n")
        except AgentError as ex:
            print()
            logger.error(f"Request failed: {ex}")


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        config = load_app_config(args.config)
        runtime = bootstrap_runtime(config, quiet=args.quiet)
    except AgentError as ex:
        print(f"Startup failed: {ex}", file=sys.stderr)
        return 1

    app = App(runtime)
    await app.start()
    try:
        if args.prompt is not None:
            try:
                reply = await app.run_non_interactive(args.prompt, on_chunk=_print_chunk)
            except AgentError as ex:
                print(f"Error: {ex}", file=sys.stderr)
                return 1
            if not app.streaming:
                print(reply, end="")
            print()
            return 0

        await _repl(app)
        return 0
    finally:
        await app.shutdown()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
