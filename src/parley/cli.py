import argparse
import asyncio
import json
import logging
import sys
import tempfile
from pathlib import Path

from parley.builtin_tools import default_registry
from parley.console import prompt_text
from parley.context import ApprovalPolicy
from parley.conversation import (
    ConversationState,
    ConversationStore,
    delete_transcripts,
    transcript_path,
)
from parley.errors import ParleyError
from parley.instrumentation import instrument
from parley.message import Message, MessageRole
from parley.provider import HTTPTransport, RequestOptions, adapter_for
from parley.runner import Runner
from parley.settings import Settings, load_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
EXIT_WORDS = {"exit", "quit"}


def configure_logging(verbose: bool = False) -> None:
    """Log to a file in the temp directory; only warnings reach the console."""
    file_handler = logging.FileHandler(Path(tempfile.gettempdir()) / "parley.log", delay=True)
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[file_handler, console_handler],
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Terminal LLM client with streaming and local tools.",
    )
    parser.add_argument("input", nargs="*", help="Message to send")
    parser.add_argument("-c", "--clear", action="store_true", help="Clear current conversation")
    parser.add_argument("-C", "--clear-all", action="store_true", help="Remove all conversations")
    parser.add_argument("-l", "--last", action="store_true", help="Print the last message")
    parser.add_argument("-p", "--plain", action="store_true", help="Start conversation without system prompt")
    parser.add_argument("-i", "--interactive", action="store_true", help="Keep reading messages after the answer")
    parser.add_argument("-n", "--no-tools", action="store_true", help="Do not offer tools to the model")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--config", help="Path to the settings file")
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Emit OpenTelemetry spans (needs parley[otel] and a configured TracerProvider)",
    )
    return parser


def initial_messages(settings: Settings, plain: bool) -> list[Message]:
    """Messages a brand new conversation starts with."""
    if plain:
        return []
    model = settings.active_provider().model
    # Gemini and the first o-series models reject the system role.
    if "gemini-" in model or "o1-" in model or "o3-" in model:
        role = MessageRole.USER
    else:
        role = MessageRole.SYSTEM
    return [Message.text_message(role, settings.startup_message)]


def format_history(state: ConversationState) -> str:
    blocks = []
    for message in state.messages:
        content = message.content
        if message.text is not None:
            body = message.text
        elif content.type == "parts":
            body = "\n".join(
                part.text if part.type == "text" else f"[Image {part.mime}]"
                for part in content.parts
            )
        else:
            body = "\n".join(f"{call.name}({call.arguments})" for call in content.calls)
        blocks.append(f"--- {message.role.value} ---\n{body}")
    return "\n\n".join(blocks)


def _read_input(args: argparse.Namespace) -> str | None:
    parts = []
    if not sys.stdin.isatty():
        piped = sys.stdin.read()
        if piped.strip():
            parts.append(piped)
    joined = " ".join(args.input)
    if joined.strip():
        parts.append(joined)
    return "\n".join(parts) if parts else None


async def _converse(runner: Runner, state: ConversationState, first: str, interactive: bool) -> None:
    await runner.run(state, first)
    while interactive:
        text = prompt_text("\n> ").strip()
        if not text or text.lower() in EXIT_WORDS:
            return
        await runner.run(state, text)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    settings = load_settings(args.config)

    path = transcript_path(settings.transcript_name)
    store = ConversationStore(path)

    if args.clear_all:
        print(f"Deleted {delete_transcripts(settings.transcript_name)} conversation transcript(s).")
        return 0

    try:
        provider_settings = settings.active_provider()
        if args.clear:
            cleared = store.clear()
            if not args.input:
                print("Conversation cleared." if cleared else "No conversation to clear.")
                return 0

        state = store.load_or_create(
            provider_settings.model, initial_messages(settings, args.plain)
        )
        if args.last and not args.input:
            if state.messages:
                print(json.dumps(state.messages[-1].content.model_dump(), indent=2))
            return 0

        user_input = _read_input(args)
        if user_input is None:
            print(format_history(state))
            return 0

        if args.trace:
            instrument()
        logger.info(f"Using {settings.provider} model {state.model}, transcript {path}")
        provider = adapter_for(
            provider_settings,
            settings.api_key(),
            provider_name=settings.provider,
            transport=HTTPTransport(timeout=settings.request_timeout),
        )
        runner = Runner(
            provider,
            store,
            tools=None if args.no_tools or not settings.tools_enabled else default_registry(),
            options=RequestOptions(
                max_tokens=settings.max_tokens,
                temperature=settings.temperature,
                vision_detail=settings.vision_detail,
            ),
            approval=ApprovalPolicy(),
        )
        asyncio.run(_converse(runner, state, user_input, args.interactive))
    except (ParleyError, ValueError, ImportError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0
