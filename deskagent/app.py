"""deskagent: main application entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime

import yaml

from deskagent.engine.config import SessionConfig
from deskagent.engine.errors import DeskAgentError
from deskagent.shared.models.message import block_to_dict

logger = logging.getLogger(__name__)


def _format_ts(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _load_config(args: argparse.Namespace) -> SessionConfig:
    config_file = args.config or os.getenv("DESK_CONFIG_FILE")
    if config_file:
        from deskagent.engine.yaml_config import load_yaml_config

        logger.info(
            "Config source: %s (from %s)",
            config_file, "--config" if args.config else "DESK_CONFIG_FILE env",
        )
        config = load_yaml_config(config_file)
    else:
        config = SessionConfig.from_env()
    if args.db:
        config.db_path = args.db
    return config


def _open_store(config: SessionConfig):
    from deskagent.shared.services.conversation_db import ConversationStore

    return ConversationStore(config.db_path)


def _cmd_list(args: argparse.Namespace, config: SessionConfig) -> int:
    store = _open_store(config)
    try:
        conversations = store.list_conversations(limit=args.limit)
    finally:
        store.close()
    if not conversations:
        print("No saved conversations.")
        return 0
    for conv in conversations:
        print(f"  {conv.id}  {_format_ts(conv.updated_at)}  {conv.title}")
    return 0


def _cmd_show(args: argparse.Namespace, config: SessionConfig) -> int:
    store = _open_store(config)
    try:
        conversation = store.get_conversation(args.conversation_id)
        if conversation is None:
            print(f"Error: unknown conversation '{args.conversation_id}'.")
            return 1
        messages = store.list_messages(conversation.id)
    finally:
        store.close()

    if args.json:
        print(json.dumps({
            "id": conversation.id,
            "title": conversation.title,
            "created_at": conversation.created_at,
            "updated_at": conversation.updated_at,
            "messages": [
                {
                    "id": m.id,
                    "role": m.role.value,
                    "timestamp": m.timestamp,
                    "content": [block_to_dict(b) for b in m.content],
                }
                for m in messages
            ],
        }, indent=2, ensure_ascii=False))
        return 0

    print(f"{conversation.title}  ({conversation.id})")
    for message in messages:
        print(f"\n[{_format_ts(message.timestamp)}] {message.role.value}:")
        for block in message.content:
            data = block_to_dict(block)
            kind = data.get("type")
            if kind == "text":
                print(data["text"])
            elif kind == "tool_reference":
                print(f"  (tool {data.get('name')} {json.dumps(data.get('input'), default=str)})")
            elif kind == "error":
                print(f"  (error: {data.get('message')})")
            else:
                print(f"  ({kind})")
    return 0


def _cmd_rename(args: argparse.Namespace, config: SessionConfig) -> int:
    store = _open_store(config)
    try:
        renamed = store.rename_conversation(args.conversation_id, args.title)
    finally:
        store.close()
    if not renamed:
        print(f"Error: unknown conversation '{args.conversation_id}'.")
        return 1
    print(f"Renamed {args.conversation_id}.")
    return 0


def _cmd_delete(args: argparse.Namespace, config: SessionConfig) -> int:
    store = _open_store(config)
    try:
        deleted = store.delete_conversation(args.conversation_id)
    finally:
        store.close()
    if not deleted:
        print(f"Error: unknown conversation '{args.conversation_id}'.")
        return 1
    print(f"Deleted {args.conversation_id}.")
    return 0


def _cmd_stats(args: argparse.Namespace, config: SessionConfig) -> int:
    store = _open_store(config)
    try:
        stats = store.stats()
    finally:
        store.close()
    print(f"Database:      {config.db_path}")
    print(f"Conversations: {stats.conversations}")
    print(f"Messages:      {stats.messages}")
    print(f"Size:          {stats.database_bytes / 1024:.1f} KB")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deskagent",
        description="deskagent: desktop AI assistant",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file. Also reads DESK_CONFIG_FILE env var.",
    )
    parser.add_argument(
        "--db", metavar="PATH",
        help="Conversation database (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command")

    tui = sub.add_parser("tui", help="Start the terminal UI (default)")
    tui.add_argument(
        "--resume", metavar="CONVERSATION_ID",
        help="Open a stored conversation",
    )

    sub.add_parser("worker", help="Run the worker process on stdin/stdout")

    conv = sub.add_parser("conversations", help="Manage stored conversations")
    conv_sub = conv.add_subparsers(dest="action", required=True)
    list_p = conv_sub.add_parser("list", help="List conversations, newest first")
    list_p.add_argument("--limit", type=int, default=50)
    show_p = conv_sub.add_parser("show", help="Print a conversation")
    show_p.add_argument("conversation_id")
    show_p.add_argument("--json", action="store_true", help="Print as JSON")
    rename_p = conv_sub.add_parser("rename", help="Rename a conversation")
    rename_p.add_argument("conversation_id")
    rename_p.add_argument("title")
    delete_p = conv_sub.add_parser("delete", help="Delete a conversation and its messages")
    delete_p.add_argument("conversation_id")
    conv_sub.add_parser("stats", help="Show database statistics")
    return parser


_CONVERSATION_COMMANDS = {
    "list": _cmd_list,
    "show": _cmd_show,
    "rename": _cmd_rename,
    "delete": _cmd_delete,
    "stats": _cmd_stats,
}


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "worker":
        from deskagent.worker.__main__ import main as worker_main

        worker_argv = ["--verbose"] if args.verbose else []
        if args.config:
            worker_argv += ["--config", args.config]
        worker_main(worker_argv)
        return

    if args.command == "conversations":
        level = "DEBUG" if args.verbose else os.getenv("DESK_LOG_LEVEL", "WARNING")
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.WARNING),
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )
        try:
            config = _load_config(args)
            sys.exit(_CONVERSATION_COMMANDS[args.action](args, config))
        except (DeskAgentError, OSError, yaml.YAMLError) as exc:
            print(f"Error: {exc}")
            sys.exit(1)

    from deskagent.tui.app import run_tui

    config = _load_config(args)
    if args.verbose:
        config.log_level = "DEBUG"
    run_tui(config, conversation_id=getattr(args, "resume", None))


if __name__ == "__main__":
    main()
