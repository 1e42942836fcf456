"""Entry point for `python -m game_designer` and the `gamedesignerd` CLI script."""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import sys
from pathlib import Path

from dotenv import load_dotenv

from game_designer.errors import DesignerError
from game_designer.oracle import OracleGateway
from game_designer.server import build_server
from game_designer.settings import DesignerSettings
from game_designer.state_store import SessionStore
from game_designer.tools import TOOL_SPECS, GameDesignTools

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(filename)s:%(lineno)d: %(message)s"

HELP_TEXT = """Game Designer MCP CLI Tool Tester

Usage examples:
  gamedesignerd test --tool designNew --session-name my_game --game-description "A 2D platformer about cats in space"
  gamedesignerd test --tool designOverview --session-name my_game
  gamedesignerd test --tool nextFeature --session-name my_game
  gamedesignerd test --tool featureReview --session-name my_game --changes-made "Implemented basic player movement"
  gamedesignerd test --tool reviewReply --session-name my_game --content "Keyboard only."
  gamedesignerd test --tool featureAsk --session-name my_game --question "How should collectibles work?"

Available tools:
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="gamedesignerd", description="Game designer MCP server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stdio = subparsers.add_parser("stdio", help="Run the server in stdin/stdout mode")
    stdio.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    stdio.add_argument("--log-dir", type=Path, default=Path("logs"), help="Directory for the rotating log file")

    http = subparsers.add_parser("http", help="Run the server with a streamable HTTP interface")
    http.add_argument("--host", default="127.0.0.1", help="Address to bind the HTTP server to")
    http.add_argument("--port", type=int, default=8080, help="Port to bind the HTTP server to")
    http.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")

    test = subparsers.add_parser("test", help="Call one tool directly from the CLI")
    test.add_argument("--tool", default="nextFeature", help="Tool to call, or 'help'")
    test.add_argument("--session-name", default=None)
    test.add_argument("--game-description", default=None)
    test.add_argument("--changes-made", default=None)
    test.add_argument("--content", default=None)
    test.add_argument("--question", default=None)
    test.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def configure_logging(*, debug: bool, log_file: Path | None = None) -> None:
    level = logging.DEBUG if debug else logging.INFO
    if log_file is None:
        logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
        return
    # stdout carries the protocol in stdio mode, so logs go to a daily file.
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.TimedRotatingFileHandler(log_file, when="midnight", encoding="utf-8")
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler])


def build_tools(settings: DesignerSettings) -> GameDesignTools:
    """Validate configuration and wire the store, oracle and façade together.

    Raises:
        RuntimeError: If the oracle credential is missing.
        DesignerError: If the state directory cannot be created.
    """
    oracle = OracleGateway.from_settings(settings)
    store = SessionStore(settings.state_root_path())
    return GameDesignTools(
        store,
        oracle,
        oracle_timeout_seconds=settings.oracle_timeout_seconds,
        expand_brief=settings.expand_brief,
    )


def run_test_tool(args: argparse.Namespace, tools: GameDesignTools) -> int:
    arguments = {
        "sessionName": args.session_name,
        "gameDescription": args.game_description,
        "changesMade": args.changes_made,
        "content": args.content,
        "question": args.question,
    }
    try:
        output = tools.call(args.tool, {key: value for key, value in arguments.items() if value is not None})
    except DesignerError as exc:
        print(f"{exc.code}: {exc.message}", file=sys.stderr)
        return 1
    print(output)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if args.command == "test" and args.tool == "help":
        print(HELP_TEXT + "\n".join(f"  {spec.name:<15}- {spec.description}" for spec in TOOL_SPECS))
        return 0

    configure_logging(
        debug=args.debug,
        log_file=args.log_dir / "stdio-server.log" if args.command == "stdio" else None,
    )
    load_dotenv()

    try:
        settings = DesignerSettings.from_env()
        tools = build_tools(settings)
    except (ValueError, RuntimeError, DesignerError) as exc:
        logging.error("Unable to start game designer: %s", exc)
        return 1

    if args.command == "test":
        return run_test_tool(args, tools)

    server = build_server(tools, host=getattr(args, "host", "127.0.0.1"), port=getattr(args, "port", 8080))
    if args.command == "stdio":
        logging.info("Starting Game Designer MCP server in STDIN/STDOUT mode")
        server.run(transport="stdio")
    else:
        logging.info("Game Designer MCP server listening on http://%s:%d/mcp", args.host, args.port)
        server.run(transport="streamable-http")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
