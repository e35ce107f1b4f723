from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from typing import Any, Dict, TextIO

import aiohttp

from .api_client import ApiError, MessagingApi, MessagingError
from .attachments import require_valid_files
from .config import MessagingConfig, load_config_from_env
from .models import Message
from .phoenix import PhoenixRealtime
from .session import Identity, MessagingSession
from .storage import SignedUrlSigner

logger = logging.getLogger(__name__)


def _emit(output: TextIO, payload: Dict[str, Any]) -> None:
    output.write(json.dumps(payload, default=str) + "\n")


def _message_payload(message: Message) -> Dict[str, Any]:
    payload = asdict(message)
    for attachment in payload["attachments"]:
        attachment.pop("path", None)
    return payload


def _identity(args: argparse.Namespace) -> Identity:
    return Identity(user_id=args.user_id, name=args.user_name, role=args.role)


def _build_api(config: MessagingConfig) -> MessagingApi:
    return MessagingApi(config.api_url, access_token=config.access_token)


async def _list_conversations(config: MessagingConfig, output: TextIO) -> int:
    api = _build_api(config)
    try:
        for conversation in await api.list_conversations():
            _emit(output, asdict(conversation))
    finally:
        await api.close()
    return 0


async def _list_messages(config: MessagingConfig, conversation_id: str, limit: int, output: TextIO) -> int:
    api = _build_api(config)
    try:
        for message in await api.list_messages(conversation_id, limit=limit):
            _emit(output, _message_payload(message))
    finally:
        await api.close()
    return 0


async def _send(config: MessagingConfig, args: argparse.Namespace, output: TextIO) -> int:
    attachments = require_valid_files(args.attach or [])
    api = _build_api(config)
    try:
        result = await api.send_message(
            args.conversation_id,
            args.text,
            attachments=attachments,
            reply_to_id=args.reply_to,
        )
    finally:
        await api.close()
    _emit(output, result)
    return 0


async def _watch(config: MessagingConfig, args: argparse.Namespace, output: TextIO) -> int:
    if not config.realtime_url:
        raise ValueError("ECOMMUNITY_REALTIME_URL is required for watch")
    api = _build_api(config)
    realtime = PhoenixRealtime(
        config.realtime_url,
        api_key=config.api_key,
        access_token=config.access_token,
        heartbeat_interval_s=config.heartbeat_interval_s,
    )
    signer = None
    if config.storage_url:
        signer = SignedUrlSigner(
            config.storage_url,
            bucket=config.attachment_bucket,
            api_key=config.api_key,
            access_token=config.access_token,
            ttl_s=config.signed_url_ttl_s,
        )
    session = MessagingSession.from_config(_identity(args), config, api, realtime, signer=signer)
    seen: Dict[str, Message] = {}
    done = asyncio.Event()
    events = 0

    def on_change() -> None:
        nonlocal events
        for message in session.messages:
            if message.is_optimistic or seen.get(message.id) == message:
                continue
            seen[message.id] = message
            _emit(output, _message_payload(message))
            events += 1
            if args.max_events and events >= args.max_events:
                done.set()

    try:
        await session.start()
        conversation = next((c for c in session.conversations if c.id == args.conversation_id), None)
        if conversation is None:
            logger.error("conversation %s not found", args.conversation_id)
            return 1
        session.add_listener(on_change)
        await session.select_conversation(conversation)
        await done.wait()
    finally:
        await session.close()
        await realtime.close()
        await api.close()
        if signer is not None:
            await signer.close()
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(description="Community messaging CLI")
    parser.add_argument("--log-level", default="WARNING", help="Logging level, e.g. DEBUG or INFO")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("conversations", help="List conversations as JSON lines")

    messages_parser = subparsers.add_parser("messages", help="Print the latest messages of a conversation")
    messages_parser.add_argument("conversation_id")
    messages_parser.add_argument("--limit", type=int, default=50, help="Page size")

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("conversation_id")
    send_parser.add_argument("text", nargs="?", default="")
    send_parser.add_argument("--attach", action="append", metavar="PATH", help="File to attach; repeatable")
    send_parser.add_argument("--reply-to", default=None, help="Id of the message being replied to")

    watch_parser = subparsers.add_parser("watch", help="Print messages of a conversation as they arrive")
    watch_parser.add_argument("conversation_id")
    watch_parser.add_argument("--max-events", type=int, default=0, help="Stop after this many messages")
    watch_parser.add_argument("--user-id", default=os.environ.get("ECOMMUNITY_USER_ID", ""))
    watch_parser.add_argument("--user-name", default=os.environ.get("ECOMMUNITY_USER_NAME", ""))
    watch_parser.add_argument("--role", choices=["member", "admin"], default="member")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_config_from_env()
        if args.command == "conversations":
            return asyncio.run(_list_conversations(config, output))
        if args.command == "messages":
            return asyncio.run(_list_messages(config, args.conversation_id, args.limit, output))
        if args.command == "send":
            return asyncio.run(_send(config, args, output))
        return asyncio.run(_watch(config, args, output))
    except (MessagingError, ValueError, aiohttp.ClientError) as exc:
        status = exc.status if isinstance(exc, ApiError) else None
        _emit(output, {"error": str(exc), "status": status})
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
