"""hitl-broker -- operator CLI for the HITL broker and runtime-agent chat.

Usage:
    hitl-broker watch [DIR] [--timeout SECS] [--auto-approve] [--log FILE]
    hitl-broker list [DIR]
    hitl-broker answer KEY RESPONSE
    hitl-broker cancel KEY
    hitl-broker serve [--port 7842] [--token SECRET]
    hitl-broker connect BROKER_URL [--token SECRET]
    hitl-broker runtime-agents RUNTIME_URL
    hitl-broker runtime-chat RUNTIME_URL SERVICE_ID [--run-id RUN] [--no-stream]

Defaults come from the environment (``HITL_DIR``, ``HITL_PORT``,
``HITL_TOKEN``, ``RUNTIME_TOKEN``, ...); flags win.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from hitl_broker.clients.http import close_client
from hitl_broker.clients.runtime_client import list_runtime_agents
from hitl_broker.config import VERSION, BrokerOptions, settings
from hitl_broker.connect import Connector
from hitl_broker.errors import HitlError
from hitl_broker.logging_setup import configure_logging
from hitl_broker.render import format_pending_table, format_runtime_agents
from hitl_broker.services.runtime_chat import RuntimeChatOptions, RuntimeChatSession
from hitl_broker.store import answer_question, cancel_question, list_questions, resolve_dir
from hitl_broker.watch import Watcher

logger = logging.getLogger(__name__)


def select_dir(positional: str | None, flag: str | None) -> str | None:
    """``--dir`` wins over the positional directory; blanks count as unset."""
    for candidate in (flag, positional):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def _options(args: argparse.Namespace) -> BrokerOptions:
    return BrokerOptions.from_settings(select_dir(getattr(args, "dir_arg", None), args.dir))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_watch(args: argparse.Namespace) -> int:
    watcher = Watcher(
        _options(args),
        timeout_seconds=args.timeout,
        auto_approve=args.auto_approve,
        log_file=args.log,
        poll_ms=args.poll_ms,
    )
    await watcher.run()
    return 0


async def cmd_list(args: argparse.Namespace) -> int:
    options = _options(args)
    pending = [q for q in await list_questions(options) if not q.answered]
    pending.sort(key=lambda q: q.timestamp)
    print(f"Handshake directory: {resolve_dir(options)}")
    print(format_pending_table(pending))
    return 0


async def cmd_answer(args: argparse.Namespace) -> int:
    result = await answer_question(args.key, args.response, _options(args))
    print(f"Wrote answer: {result['path']}")
    return 0


async def cmd_cancel(args: argparse.Namespace) -> int:
    result = await cancel_question(args.key, _options(args))
    print(f"Cancelled: {args.key}" if result["removed"] else f"No question found: {args.key}")
    return 0


async def cmd_connect(args: argparse.Namespace) -> int:
    connector = Connector(
        args.broker_url,
        token=args.token or None,
        timeout_seconds=args.timeout,
        auto_approve=args.auto_approve,
        poll_ms=args.poll_ms,
    )
    await connector.run()
    return 0


async def cmd_runtime_agents(args: argparse.Namespace) -> int:
    print(f"Runtime: {args.runtime_url}")
    items = await list_runtime_agents(args.runtime_url, args.token or None)
    print(format_runtime_agents(items))
    return 0


async def cmd_runtime_chat(args: argparse.Namespace) -> int:
    session = RuntimeChatSession(
        RuntimeChatOptions(
            runtime_url=args.runtime_url,
            service_id=args.service_id,
            agent=args.agent,
            run_id=args.run_id,
            token=args.token or None,
            poll_ms=args.poll_ms,
            events_limit=args.events_limit,
            use_stream=args.stream,
        )
    )
    await session.run()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from hitl_broker.main import ServerOptions, create_app

    token = args.token or None
    app = create_app(ServerOptions(broker_options=_options(args), token=token))
    print(f"Broker server running on http://localhost:{args.port}")
    if token:
        print("Token auth enabled. Use Authorization: Bearer <token> or x-hitl-token.")
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hitl-broker",
        description="Operator CLI for the HITL broker and runtime-agent chat.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Answer questions from a local handshake directory")
    watch.add_argument("dir_arg", nargs="?", metavar="dir", help="Handshake directory")
    watch.add_argument("--dir", help="Override handshake directory")
    watch.add_argument("--timeout", type=int, help="Skip questions older than N seconds")
    watch.add_argument("--auto-approve", action="store_true", help="Auto-write empty responses")
    watch.add_argument("--log", help="Append JSONL audit log")
    watch.add_argument("--poll-ms", type=int, default=settings.WATCH_POLL_MS, help="Polling interval")
    watch.set_defaults(handler=cmd_watch)

    list_cmd = sub.add_parser("list", help="List pending questions")
    list_cmd.add_argument("dir_arg", nargs="?", metavar="dir", help="Handshake directory")
    list_cmd.add_argument("--dir", help="Override handshake directory")
    list_cmd.set_defaults(handler=cmd_list)

    answer = sub.add_parser("answer", help="Write an answer for KEY")
    answer.add_argument("key")
    answer.add_argument("response")
    answer.add_argument("--dir", help="Override handshake directory")
    answer.set_defaults(handler=cmd_answer)

    cancel = sub.add_parser("cancel", help="Remove the question and answer for KEY")
    cancel.add_argument("key")
    cancel.add_argument("--dir", help="Override handshake directory")
    cancel.set_defaults(handler=cmd_cancel)

    serve = sub.add_parser("serve", help="Serve the HTTP broker and operator page")
    serve.add_argument("--dir", help="Override handshake directory")
    serve.add_argument("--host", default=settings.HITL_HOST)
    serve.add_argument("--port", type=int, default=settings.HITL_PORT, help="HTTP port")
    serve.add_argument("--token", default=settings.HITL_TOKEN, help="Optional bearer token for API access")
    serve.set_defaults(handler=cmd_serve)

    connect = sub.add_parser("connect", help="Answer questions held by a remote broker")
    connect.add_argument("broker_url")
    connect.add_argument("--token", default=settings.HITL_TOKEN, help="Optional bearer token")
    connect.add_argument("--poll-ms", type=int, default=settings.CONNECT_POLL_MS, help="Polling interval")
    connect.add_argument("--timeout", type=int, help="Skip remote questions older than N seconds")
    connect.add_argument("--auto-approve", action="store_true", help="Auto-write empty responses")
    connect.set_defaults(handler=cmd_connect)

    agents = sub.add_parser("runtime-agents", help="List agent services registered with a runtime")
    agents.add_argument("runtime_url")
    agents.add_argument("--token", default=settings.RUNTIME_TOKEN, help="Optional bearer token")
    agents.set_defaults(handler=cmd_runtime_agents)

    chat = sub.add_parser("runtime-chat", help="Chat with a runtime agent run over HITL input")
    chat.add_argument("runtime_url")
    chat.add_argument("service_id")
    chat.add_argument("--agent", help="Override agent id (defaults to registry value)")
    chat.add_argument("--run-id", help="Attach to an existing run instead of creating one")
    chat.add_argument("--token", default=settings.RUNTIME_TOKEN, help="Optional bearer token")
    chat.add_argument("--poll-ms", type=int, default=settings.RUNTIME_POLL_MS, help="Polling interval")
    chat.add_argument(
        "--events-limit",
        type=int,
        default=settings.RUNTIME_EVENTS_LIMIT,
        help="Max run events fetched per poll",
    )
    chat.add_argument(
        "--no-stream",
        dest="stream",
        action="store_false",
        help="Disable SSE streaming and use polling only",
    )
    chat.set_defaults(handler=cmd_runtime_chat)

    return parser


async def _run_async(args: argparse.Namespace) -> int:
    try:
        return await args.handler(args)
    finally:
        await close_client()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    try:
        if args.command == "serve":
            return cmd_serve(args)
        return asyncio.run(_run_async(args))
    except HitlError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"{exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 1
    except EOFError:
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
