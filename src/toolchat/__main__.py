"""CLI entrypoint for toolchat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys

from .config import Config, ensure_config_dir, load_config
from .engine import ChatEngine
from .exceptions import ToolChatError
from .logging_utils import configure_logging
from .models import Message


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolchat",
        description="toolchat - stream a chat turn from Ollama or an OpenAI-compatible server",
    )
    parser.add_argument("prompt", nargs="?", help="User message to send")
    parser.add_argument("--model", help="Model name (defaults to backend.model)")
    parser.add_argument(
        "--tools",
        action="store_true",
        help="Let the model call the configured tool servers",
    )
    think = parser.add_mutually_exclusive_group()
    think.add_argument("--think", dest="think", action="store_true", default=None)
    think.add_argument("--no-think", dest="think", action="store_false")
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List models offered by the backend and exit",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser


async def _run_turn(engine: ChatEngine, args: argparse.Namespace) -> int:
    request = engine.build_request(
        [Message(role="user", content=args.prompt)],
        args.model,
        think=args.think,
        tools=args.tools,
    )
    turn = engine.stream(request)
    try:
        async for fragment in turn:
            sys.stdout.write(fragment)
            sys.stdout.flush()
    except asyncio.CancelledError:
        turn.cancel()
        raise
    finally:
        await engine.aclose()
    sys.stdout.write("\n")
    return 0


async def _list_models(engine: ChatEngine, model: str | None) -> int:
    for name in await engine.list_models(model):
        print(name)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, handle CLI flags, and stream one turn to stdout."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("toolchat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"toolchat {version}")
        return 0

    if args.config is None:
        ensure_config_dir()
    config: Config = load_config(args.config)
    configure_logging(config.logging)
    engine = ChatEngine(config)

    try:
        if args.list_models:
            return asyncio.run(_list_models(engine, args.model))
        if not args.prompt or not args.prompt.strip():
            parser.error("a prompt is required")
        return asyncio.run(_run_turn(engine, args))
    except ToolChatError as exc:
        print(f"toolchat: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
