"""Command line entry point invoked by the host tool at lifecycle points.

stdout carries exactly one status line per captured event, or the markdown
context document for ``context-request``. Diagnostics go to stderr, and a
failure exits with the code of its error category.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from collections.abc import Mapping, Sequence
from typing import Any, TextIO, cast

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from context_extender import __version__
from context_extender.config import Settings, get_settings
from context_extender.core.dispatcher import dispatch
from context_extender.core.errors import ConfigurationError, ContextExtenderError
from context_extender.core.event_processor import HookRequest
from context_extender.models.events import HookKind

logger = logging.getLogger(__name__)

EXIT_UNEXPECTED = 1


def _hook_kind(value: str) -> HookKind:
    try:
        return HookKind.parse(value)
    except ValueError:
        choices = ", ".join(kind.value for kind in HookKind)
        raise argparse.ArgumentTypeError(f"unknown event {value!r} (choose from {choices})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="context-extender",
        description="Capture host tool sessions into a local datastore",
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"context-extender {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    capture = subparsers.add_parser("capture", help="Record one hook event")
    capture.add_argument(
        "--event",
        required=True,
        type=_hook_kind,
        help="Hook kind (session-start, user-prompt, claude-response, session-end, "
        "conversation-compress, context-request)",
    )
    capture.add_argument("--data", default=None, help="Event payload text")
    capture.add_argument("--session-id", default=None, help="Session id when the env var is unset")
    capture.add_argument("--db", default=None, help="Database path (default from settings)")
    return parser


def configure_logging(settings: Settings) -> None:
    """Rich console logging on stderr, plus a debug file when enabled."""
    console_handler = RichHandler(
        console=Console(stderr=True), rich_tracebacks=True, show_path=False
    )
    console_handler.setLevel(settings.LOG_LEVEL.upper())
    handlers: list[logging.Handler] = [console_handler]
    level = console_handler.level

    if settings.DEBUG:
        settings.DEBUG_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.DEBUG_LOG_PATH, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)
        level = logging.DEBUG

    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)


def load_settings() -> Settings:
    """Read settings and set up logging, reporting bad values as one error."""
    try:
        settings = get_settings()
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"invalid settings: {problems}") from e
    try:
        configure_logging(settings)
    except (ValueError, OSError) as e:
        raise ConfigurationError(f"cannot configure logging: {e}") from e
    return settings


def read_stdin(stream: TextIO | None) -> tuple[dict[str, Any], str | None]:
    """Split piped stdin into host fields (a JSON object) or a plain payload."""
    if stream is None or stream.closed or stream.isatty():
        return {}, None
    raw = stream.read()
    if not raw.strip():
        return {}, None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}, raw
    if isinstance(value, dict):
        return cast(dict[str, Any], value), None
    return {}, raw


def main(
    argv: Sequence[str] | None = None,
    stdin: TextIO | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"error [{e.category}]: {e}", file=sys.stderr)
        return e.exit_code

    fields, stdin_text = read_stdin(stdin if stdin is not None else sys.stdin)
    request = HookRequest(
        kind=args.event,
        data=args.data if args.data is not None else stdin_text,
        fields=fields,
        session_id=args.session_id,
        env=dict(env if env is not None else os.environ),
        working_dir=os.getcwd(),
        pid=os.getpid(),
        clock_ns=time.time_ns(),
    )

    try:
        result = asyncio.run(dispatch(request, db_path=args.db, settings=settings))
    except ContextExtenderError as e:
        logger.debug(f"{args.event} failed", exc_info=True)
        print(f"error [{e.category}]: {e}", file=sys.stderr)
        return e.exit_code
    except Exception as e:
        logger.exception(f"Unexpected failure handling {args.event}")
        print(f"error [Unexpected]: {e}", file=sys.stderr)
        return EXIT_UNEXPECTED

    if result.output is not None:
        sys.stdout.write(result.output)
    else:
        print(result.status)
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
