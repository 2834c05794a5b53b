import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from chatdeck.app import ChatApp
from chatdeck.builtins import format_session_line
from chatdeck.config import ChatConfig, ConfigError
from chatdeck.errors import ValidationError
from chatdeck.repl import ChatREPL, print_event
from chatdeck.search import search, toggle_type_filter
from chatdeck.sessions.persistence import export_sessions, read_import_file


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_format == "json":
        handlers[0].setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=handlers)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def _build_app(args: argparse.Namespace, with_events: bool = False) -> ChatApp:
    config = ChatConfig.from_env(data_dir=args.data_dir)
    config.validate()
    return ChatApp.build(config, on_event=print_event if with_events else None)


def cmd_chat(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    async def _run() -> None:
        app = _build_app(args, with_events=True)
        await app.start()
        if args.model:
            session = app.store.current_session
            if session is not None:
                app.store.update_model(session.id, args.model)
        await ChatREPL(app).run(initial_message=args.message)

    try:
        asyncio.run(_run())
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    app = _build_app(args)
    current = app.store.current_session_id
    for position, session in enumerate(app.store.sessions, start=1):
        print(format_session_line(position, session, current))
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    app = _build_app(args)
    sessions = app.store.sessions
    query = args.query
    if args.type_filter:
        query = toggle_type_filter(query, args.type_filter, True)
    results = search(sessions, query)
    if not results:
        print("No matching sessions.")
        return 0
    current = app.store.current_session_id
    for session in results:
        print(format_session_line(sessions.index(session) + 1, session, current))
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    app = _build_app(args)
    path = export_sessions(app.store.export_all(), Path(args.output_dir).expanduser())
    print(f"Exported to: {path}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)
    app = _build_app(args)
    try:
        records = read_import_file(Path(args.file).expanduser())
        sessions = app.store.import_all(records)
    except ValidationError as e:
        logger.error(f"Failed to import sessions: {e}")
        return 1
    print(f"Imported {len(sessions)} session(s)")
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    app = _build_app(args)
    models = asyncio.run(app.start())
    if not models:
        print("No models available.")
        return 1
    for name in models:
        print(name)
    return 0


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="chatdeck",
        description="Multi-session chat with a local language model server",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only warnings and errors")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log output format (default: text)",
    )
    parser.add_argument(
        "--data-dir",
        metavar="PATH",
        help="Where sessions are stored (default: $CHATDECK_DATA_DIR or ~/.chatdeck)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    chat_parser = subparsers.add_parser("chat", help="Start the interactive chat")
    chat_parser.add_argument("--model", help="Model for the current session")
    chat_parser.add_argument("--message", "-m", help="Send this message first")
    chat_parser.set_defaults(func=cmd_chat)

    sessions_parser = subparsers.add_parser("sessions", help="List stored sessions")
    sessions_parser.set_defaults(func=cmd_sessions)

    search_parser = subparsers.add_parser("search", help="Search stored sessions")
    search_parser.add_argument(
        "query",
        nargs="?",
        default="",
        help='Query, e.g. \'type:favorite in:"python code"\' or \'tag:work budget\'',
    )
    type_group = search_parser.add_mutually_exclusive_group()
    type_group.add_argument(
        "--bookmarked",
        dest="type_filter",
        action="store_const",
        const="bookmarked",
        help="Only bookmarked sessions",
    )
    type_group.add_argument(
        "--favorite",
        dest="type_filter",
        action="store_const",
        const="favorite",
        help="Only favorite sessions",
    )
    search_parser.set_defaults(func=cmd_search)

    export_parser = subparsers.add_parser("export", help="Export all sessions to a JSON backup")
    export_parser.add_argument(
        "--output-dir", "-o", default=".", help="Directory for the backup file"
    )
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser(
        "import", help="Replace all sessions with those from a JSON backup"
    )
    import_parser.add_argument("file", help="Backup file to import")
    import_parser.set_defaults(func=cmd_import)

    models_parser = subparsers.add_parser("models", help="List models on the server")
    models_parser.set_defaults(func=cmd_models)

    args = parser.parse_args()

    if not args.command:
        args.model = None
        args.message = None
        args.func = cmd_chat

    try:
        return args.func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
