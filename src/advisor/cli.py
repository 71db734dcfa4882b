"""Terminal client for the advisor gateway.

Conversations are kept in a file-backed session store per profile (the same
document layout the gateway uses) and every turn goes through the gateway's
``/api/chat`` relay, so no upstream credentials are needed locally.
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from typing import List, Optional

from .domain.errors import AdvisorError
from .infrastructure.record_store import FileRecordStore
from .infrastructure.session_store import SessionStore
from .services.bot_client import GatewayClient
from .services.bot_registry import BotKind, ResolvedBot
from .services.chat_stream import ChatStreamCoordinator, TurnResult
from .services.recipes import recipe_detail_prompt


def _store(args: argparse.Namespace) -> SessionStore:
    return SessionStore(FileRecordStore(args.data_dir), profile_id=args.profile)


def _client_bot(alias: Optional[str]) -> ResolvedBot:
    # The gateway resolves the real bot id from the alias.
    return ResolvedBot(bot_id="", kind=BotKind.from_alias(alias) or BotKind.ADVISOR, alias=alias)


def _run_chat(args: argparse.Namespace, text: str, alias: Optional[str]) -> int:
    store = _store(args)
    if args.session:
        try:
            store.switch_active(args.session)
        except KeyError:
            sys.stderr.write(f"error: session not found: {args.session}\n")
            return 1
    session_id = store.active_session_id
    coordinator = ChatStreamCoordinator(
        store,
        GatewayClient(args.gateway),
        _client_bot(alias),
        render=lambda text: text,
    )
    shown = {"text": ""}

    def on_render(text: str) -> None:
        prev = shown["text"]
        # Streamed answers only grow; anything else (fallback, error) is reprinted whole.
        sys.stdout.write(text[len(prev):] if text.startswith(prev) else "\n" + text)
        sys.stdout.flush()
        shown["text"] = text

    def on_error(reason: str) -> None:
        sys.stderr.write(f"\n[error] {reason}\n")

    def on_done(result: TurnResult) -> None:
        if result.fallback_used:
            sys.stderr.write("\n[offline reply]\n")
        sys.stdout.write("\n")

    coordinator.run_turn(session_id, text, on_render=on_render, on_error=on_error, on_done=on_done, user_id=args.user_id)
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    return _run_chat(args, args.text, args.alias)


def cmd_recipe(args: argparse.Namespace) -> int:
    return _run_chat(args, recipe_detail_prompt(args.name), BotKind.RECIPE.value)


def cmd_sessions(args: argparse.Namespace) -> int:
    store = _store(args)
    active = store.active_session_id
    for sess in store.list_sessions(args.filter or ""):
        marker = "*" if sess.id == active else " "
        when = datetime.fromtimestamp(sess.timestamp / 1000).strftime("%Y-%m-%d %H:%M")
        print(f"{marker} {sess.id}  {when}  {len(sess.messages):3d} msgs  {sess.title}")
    return 0


def cmd_new(args: argparse.Namespace) -> int:
    print(_store(args).create_session())
    return 0


def cmd_poster(args: argparse.Namespace) -> int:
    data = GatewayClient(args.gateway).generate_poster(args.area, season=args.season, token=args.token)
    if data.get("imageUrl"):
        print(data["imageUrl"])
    else:
        print(data.get("text") or "")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="advisor", description="Health advisor chat client")
    parser.add_argument("--profile", default=os.getenv("ADVISOR_PROFILE", "default"))
    parser.add_argument("--gateway", default=None, help="Gateway base URL (default: ADVISOR_GATEWAY_URL)")
    parser.add_argument("--data-dir", default=None, help="Session data directory (default: ADVISOR_DATA_DIR)")
    parser.add_argument("--user-id", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("chat", help="Send one message and stream the answer")
    p.add_argument("text")
    p.add_argument("--alias", default=None, help="Bot alias, e.g. recipe or analysis")
    p.add_argument("--session", default=None, help="Session id (default: active session)")
    p.set_defaults(func=cmd_chat)

    p = sub.add_parser("sessions", help="List sessions, most recent first")
    p.add_argument("--filter", default="")
    p.set_defaults(func=cmd_sessions)

    p = sub.add_parser("new", help="Start a new session and make it active")
    p.set_defaults(func=cmd_new)

    p = sub.add_parser("poster", help="Generate a regional health poster")
    p.add_argument("area")
    p.add_argument("--season", default=None)
    p.add_argument("--token", default=os.getenv("ADVISOR_TOKEN"), help="Bearer token to record history")
    p.set_defaults(func=cmd_poster)

    p = sub.add_parser("recipe", help="Ask the recipe bot for a detailed recipe")
    p.add_argument("name")
    p.add_argument("--session", default=None)
    p.set_defaults(func=cmd_recipe)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except AdvisorError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
