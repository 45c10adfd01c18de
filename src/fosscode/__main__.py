"""CLI entry point for fosscode."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .config import MAX_ITERATIONS, AppConfig, _get_config_path, load_config, require_backend


def _load_config_or_exit(config_path: Path | None) -> AppConfig:
    path = config_path or _get_config_path()
    try:
        config = load_config(path)
        require_backend(config, path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Cannot read config file {path}: {e}", file=sys.stderr)
        sys.exit(1)
    return config


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # The SDK and HTTP client are chatty at INFO.
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, logging.getLogger().level))


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> None:
    if args.read_only:
        config.read_only = True
    if getattr(args, "model", None):
        config.ai.model = args.model
    if getattr(args, "path", None):
        # CLI arg from local user; validated as existing directory
        resolved = os.path.abspath(args.path)
        if not os.path.isdir(resolved):
            print(f"Error: {args.path} is not a directory", file=sys.stderr)
            sys.exit(1)
        config.working_dir = resolved
    if getattr(args, "max_iterations", None):
        config.agent.max_iterations = min(max(1, args.max_iterations), MAX_ITERATIONS)


def _run_exec(config: AppConfig, args: argparse.Namespace) -> int:
    from .cli.exec_mode import run_exec

    try:
        return asyncio.run(run_exec(config, args.prompt, output_json=args.json, timeout=args.timeout))
    except KeyboardInterrupt:
        return 130


def _run_chat(config: AppConfig) -> None:
    from .cli.repl import run_repl

    try:
        asyncio.run(run_repl(config))
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass


def main() -> None:
    parser = argparse.ArgumentParser(prog="fosscode", description="fosscode - an AI coding agent for your terminal")
    subparsers = parser.add_subparsers(dest="command")

    def _add_session_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-p", "--path", default=None, help="Working directory (default: cwd)")
        sub.add_argument("-m", "--model", default=None, help="Override AI model")
        sub.add_argument("--max-iterations", dest="max_iterations", type=int, default=None)

    # `fosscode chat` subcommand
    chat_parser = subparsers.add_parser("chat", help="Interactive chat mode")
    _add_session_args(chat_parser)

    # `fosscode exec` subcommand
    exec_parser = subparsers.add_parser("exec", help="Run one message non-interactively and exit")
    exec_parser.add_argument("prompt", help="The message to send")
    exec_parser.add_argument("--json", action="store_true", help="Print the result as JSON on stdout")
    exec_parser.add_argument("--timeout", type=float, default=None, help="Abort after this many seconds")
    _add_session_args(exec_parser)

    # Global flags
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--log-level", dest="log_level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--read-only",
        dest="read_only",
        action="store_true",
        help="Only expose read tools (no writes, no shell)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show iterations and token usage")

    args = parser.parse_args()

    config = _load_config_or_exit(args.config)
    _configure_logging(args.log_level or config.log_level)
    _apply_overrides(config, args)
    if args.verbose:
        from .cli import renderer

        renderer.set_verbose(True)

    if args.command == "exec":
        sys.exit(_run_exec(config, args))
    _run_chat(config)


if __name__ == "__main__":
    main()
