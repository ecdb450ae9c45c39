import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from chat_context_engine.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_context_engine.bootstrap import build_engine
from chat_context_engine.engine import ChatContextEngine
from chat_context_engine.errors import EngineError
from chat_context_engine.logging_config import setup_logging
from chat_context_engine.models import EXPIRY_OPTIONS, ExpiryConfig, to_iso
from chat_context_engine.transfer import export_session, import_session

_EXPIRY_CHOICES = {config.key(): config for _, config in EXPIRY_OPTIONS}


def _parse_expiry(value: str) -> ExpiryConfig:
    if value in _EXPIRY_CHOICES:
        return _EXPIRY_CHOICES[value]
    raise argparse.ArgumentTypeError(f"expiry must be one of: {', '.join(_EXPIRY_CHOICES)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-context", description="Inspect and manage stored chat sessions.")
    parser.add_argument("--config", help="Path to config.json (default: ./config.json)")
    parser.add_argument("--tenant", help="Tenant id (default: $CHAT_CONTEXT_TENANT or 'local')")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List sessions, most recently updated first")
    sub.add_parser("stats", help="Show storage usage")

    export = sub.add_parser("export", help="Write a session as JSON")
    export.add_argument("session_id")
    export.add_argument("-o", "--output", help="Output file (default: stdout)")

    imp = sub.add_parser("import", help="Import a session exported with 'export'")
    imp.add_argument("path")
    imp.add_argument("--keep-id", action="store_true", help="Reuse the exported session id")

    delete = sub.add_parser("delete", help="Delete one session, or all with --all")
    delete.add_argument("session_id", nargs="?")
    delete.add_argument("--all", action="store_true")

    share = sub.add_parser("share", help="Create a read-only share link")
    share.add_argument("session_id")
    share.add_argument("--expiry", type=_parse_expiry, default=ExpiryConfig.days(7), help="e.g. hours-1, days-7, never")

    resolve = sub.add_parser("resolve", help="Show a shared session")
    resolve.add_argument("share_id")

    revoke = sub.add_parser("revoke", help="Revoke a share link")
    revoke.add_argument("share_id")

    budget = sub.add_parser("budget", help="Token budget of a stored session")
    budget.add_argument("session_id")
    return parser


def run_command(engine: ChatContextEngine, tenant_id: str, args: argparse.Namespace) -> int:
    store = engine.store

    if args.command == "list":
        for entry in store.list_sessions(tenant_id):
            print(f"{entry.id}  {to_iso(entry.updated_at)}  {entry.message_count:>4} msgs  {entry.title}")
        return 0

    if args.command == "stats":
        stats = store.get_storage_stats(tenant_id)
        percent = stats.used / stats.total * 100 if stats.total else 0.0
        print(f"Sessions: {stats.session_count}/{store.max_sessions}")
        print(f"Storage:  {stats.used:,} / {stats.total:,} bytes ({percent:.1f}%)")
        return 0

    if args.command == "export":
        payload = export_session(store, tenant_id, args.session_id)
        if args.output:
            Path(args.output).write_text(payload, encoding="utf-8")
            print(f"Exported {args.session_id} to {args.output}")
        else:
            print(payload)
        return 0

    if args.command == "import":
        payload = Path(args.path).read_text(encoding="utf-8")
        session = import_session(store, tenant_id, payload, keep_id=args.keep_id)
        print(f"Imported as {session.id} ({session.message_count} messages)")
        return 0

    if args.command == "delete":
        if args.all:
            store.delete_all(tenant_id)
            print("Deleted all sessions")
            return 0
        if not args.session_id:
            print("delete needs a session id or --all", file=sys.stderr)
            return 2
        store.delete(tenant_id, args.session_id)
        print(f"Deleted {args.session_id}")
        return 0

    if args.command == "share":
        record = engine.shares.create_share(tenant_id, args.session_id, args.expiry)
        expires = to_iso(record.expires_at) if record.expires_at else "never"
        print(f"{engine.shares.share_path(record.share_id)}  (expires: {expires})")
        return 0

    if args.command == "resolve":
        session = engine.open_shared(tenant_id, args.share_id)
        print(json.dumps(session.to_dict(), ensure_ascii=False, indent=2))
        return 0

    if args.command == "revoke":
        engine.shares.revoke(tenant_id, args.share_id)
        print(f"Revoked {args.share_id}")
        return 0

    if args.command == "budget":
        session = store.get(tenant_id, args.session_id)
        if session is None:
            print(f"Session not found: {args.session_id}", file=sys.stderr)
            return 1
        snapshot = engine.budget(session.messages)
        print(f"Tokens: {snapshot.used:,} / {snapshot.limit:,} ({snapshot.percentage:.1f}%), {snapshot.remaining:,} remaining")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


async def _run(args: argparse.Namespace) -> int:
    app = parse_app_config(load_json_config(args.config))
    env = resolve_runtime_env()
    tenant_id = args.tenant or env.tenant_id
    setup_logging(level=app.log_level, consumers=app.log_consumers, tenant_id=tenant_id)

    engine = build_engine(app, env)
    try:
        return run_command(engine, tenant_id, args)
    except EngineError as ex:
        logger.debug(f"Command {args.command} failed: {ex!r}")
        print(f"Error: {ex}", file=sys.stderr)
        return 1
    finally:
        await engine.close()


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
