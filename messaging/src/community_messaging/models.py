"""Client-side data model for conversations, messages and typing signals."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

UNKNOWN_NAME = "Unknown"
TEMP_ID_PREFIX = "temp-"
TYPING_TTL_MS = 3000

Signer = Callable[[str], Awaitable[Optional[str]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime:
    """Parse an ISO-8601 timestamp; unparseable values sort first."""

    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _joined_name(row: Any, default: str = UNKNOWN_NAME) -> str:
    if not isinstance(row, dict):
        return default
    users = row.get("users")
    if isinstance(users, dict) and isinstance(users.get("name"), str) and users["name"]:
        return users["name"]
    return default


@dataclass
class Participant:
    id: str
    name: str
    avatar: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            avatar=_str_or_none(data.get("avatar")) or _str_or_none(data.get("image")),
            is_online=bool(data.get("isOnline", False)),
            last_seen=_str_or_none(data.get("lastSeen")),
        )


@dataclass
class LastMessageSummary:
    content: str
    timestamp: str
    sender_id: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LastMessageSummary":
        # Two shapes are in circulation: the flat client one and the server's nested one.
        sender = data.get("sender") if isinstance(data.get("sender"), dict) else {}
        return cls(
            content=str(data.get("content", data.get("body")) or ""),
            timestamp=str(data.get("timestamp", data.get("createdAt")) or ""),
            sender_id=str(data.get("senderId") or sender.get("id") or ""),
        )


@dataclass
class Conversation:
    id: str
    participants: List[Participant] = field(default_factory=list)
    last_message: Optional[LastMessageSummary] = None
    unread_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    title: Optional[str] = None
    is_group: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Conversation":
        participants = [
            Participant.from_api(entry)
            for entry in data.get("participants") or []
            if isinstance(entry, dict) and entry.get("id") is not None
        ]
        last_message = data.get("lastMessage")
        unread = data.get("unreadCount")
        return cls(
            id=str(data["id"]),
            participants=participants,
            last_message=LastMessageSummary.from_api(last_message) if isinstance(last_message, dict) else None,
            unread_count=unread if isinstance(unread, int) and unread > 0 else 0,
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or data.get("lastMessageAt") or ""),
            title=_str_or_none(data.get("title")),
            is_group=bool(data.get("isGroup", False)),
        )

    def has_participant(self, user_id: str) -> bool:
        return any(p.id == user_id for p in self.participants)

    def is_direct_with(self, user_id: str) -> bool:
        return len(self.participants) == 2 and self.has_participant(user_id)


@dataclass
class Attachment:
    id: str
    name: str
    mime_type: str
    size: int
    url: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            mime_type=str(data.get("type") or ""),
            size=int(data.get("size") or 0),
            url=_str_or_none(data.get("url")),
        )


@dataclass(frozen=True)
class Gif:
    id: str
    title: str
    url: str
    preview: str
    width: int
    height: int

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Gif":
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            preview=str(data.get("preview") or ""),
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
        )

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "preview": self.preview,
            "width": self.width,
            "height": self.height,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_api())


@dataclass
class ReactionGroup:
    emoji: str
    count: int
    users: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ReactionGroup":
        users = [str(u) for u in data.get("users") or []]
        count = data.get("count")
        return cls(emoji=str(data.get("emoji") or ""), count=count if isinstance(count, int) else len(users), users=users)


@dataclass(frozen=True)
class ReplyTo:
    id: str
    content: str
    sender_name: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ReplyTo":
        return cls(
            id=str(data.get("id") or ""),
            content=str(data.get("content") or ""),
            sender_name=str(data.get("senderName") or ""),
        )


@dataclass(frozen=True)
class ReadReceipt:
    user_id: str
    user_name: str = UNKNOWN_NAME
    read_at: str = ""

    @classmethod
    def from_api(cls, data: Any) -> "ReadReceipt":
        if isinstance(data, str):
            return cls(user_id=data)
        return cls(
            user_id=str(data.get("userId") or ""),
            user_name=str(data.get("userName") or UNKNOWN_NAME),
            read_at=str(data.get("readAt") or ""),
        )


@dataclass
class Message:
    id: str
    content: str
    sender_id: str
    sender_name: str
    timestamp: str
    attachments: List[Attachment] = field(default_factory=list)
    gif: Optional[Gif] = None
    reactions: List[ReactionGroup] = field(default_factory=list)
    reply_to: Optional[ReplyTo] = None
    is_read: bool = False
    read_by: List[ReadReceipt] = field(default_factory=list)
    is_edited: bool = False
    is_optimistic: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Message":
        gif = data.get("gif")
        reply_to = data.get("replyTo")
        return cls(
            id=str(data["id"]),
            content=str(data.get("content") or ""),
            sender_id=str(data.get("senderId") or ""),
            sender_name=str(data.get("senderName") or ""),
            timestamp=str(data.get("timestamp") or ""),
            attachments=[Attachment.from_api(a) for a in data.get("attachments") or [] if isinstance(a, dict)],
            gif=Gif.from_api(gif) if isinstance(gif, dict) else None,
            reactions=[ReactionGroup.from_api(r) for r in data.get("reactions") or [] if isinstance(r, dict)],
            reply_to=ReplyTo.from_api(reply_to) if isinstance(reply_to, dict) else None,
            is_read=bool(data.get("isRead", False)),
            read_by=[ReadReceipt.from_api(r) for r in data.get("readBy") or [] if isinstance(r, (dict, str))],
            is_edited=bool(data.get("isEdited", False)),
        )

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def sort_key(self) -> datetime:
        return parse_timestamp(self.timestamp)

    def edited(self, content: str) -> "Message":
        return replace(self, content=content, is_edited=True)


@dataclass
class TypingIndicator:
    user_id: str
    user_name: str
    conversation_id: str
    timestamp_ms: int

    def is_active(self, now_ms: int, ttl_ms: int = TYPING_TTL_MS) -> bool:
        return now_ms - self.timestamp_ms < ttl_ms


@dataclass
class Contact:
    """A community member the current user can start a conversation with."""

    id: str
    name: str
    email: str = ""
    image: Optional[str] = None
    status: Optional[str] = None
    has_conversation: bool = False
    conversation_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Contact":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            email=str(data.get("email") or ""),
            image=_str_or_none(data.get("image")),
            status=_str_or_none(data.get("status")),
            has_conversation=bool(data.get("has_conversation", False)),
            conversation_id=_str_or_none(data.get("conversation_id")),
        )


@dataclass
class PinnedMessage:
    id: str
    message_id: str
    pinned_by: str
    pinned_at: str
    content: str = ""
    sender_name: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PinnedMessage":
        message = data.get("messages") if isinstance(data.get("messages"), dict) else {}
        return cls(
            id=str(data["id"]),
            message_id=str(data.get("message_id") or message.get("id") or ""),
            pinned_by=str(data.get("pinned_by") or ""),
            pinned_at=str(data.get("pinned_at") or ""),
            content=str(message.get("body") or ""),
            sender_name=_joined_name(message, default=""),
        )


@dataclass(frozen=True)
class ConversationSettings:
    custom_title: Optional[str] = None
    is_muted: bool = False
    mute_until: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ConversationSettings":
        # Defaults come back camelCase, stored rows snake_case.
        return cls(
            custom_title=_str_or_none(data.get("customTitle", data.get("custom_title"))),
            is_muted=bool(data.get("isMuted", data.get("is_muted", False))),
            mute_until=_str_or_none(data.get("muteUntil", data.get("mute_until"))),
        )

    def to_api(self) -> Dict[str, Any]:
        return {"customTitle": self.custom_title, "isMuted": self.is_muted, "muteUntil": self.mute_until}


def is_valid_send(content: str, attachments: Iterable[Attachment] | None, gif: Gif | None) -> bool:
    """A send needs a non-blank body, at least one attachment, or a gif."""

    return bool(content and content.strip()) or bool(list(attachments or [])) or gif is not None


def group_reactions(rows: Iterable[Dict[str, Any]]) -> List[ReactionGroup]:
    """Aggregate raw reaction rows into per-emoji groups, first-seen order."""

    groups: Dict[str, ReactionGroup] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        emoji = row.get("reaction")
        if not isinstance(emoji, str):
            continue
        name = _joined_name(row)
        group = groups.get(emoji)
        if group is None:
            groups[emoji] = ReactionGroup(emoji=emoji, count=1, users=[name])
        else:
            group.count += 1
            group.users.append(name)
    return list(groups.values())


async def message_from_row(row: Dict[str, Any], signer: Signer | None = None) -> Message:
    """Format a joined ``messages`` row as delivered after a realtime insert.

    Attachment storage paths are resolved through ``signer``; a failed
    signature leaves the attachment URL unset rather than failing the row.
    """

    raw_attachments = [a for a in row.get("message_attachments") or [] if isinstance(a, dict)]

    async def _sign(att: Dict[str, Any]) -> Optional[str]:
        path = att.get("storage_path")
        if signer is None or not isinstance(path, str):
            return None
        return await signer(path)

    urls = await asyncio.gather(*(_sign(att) for att in raw_attachments))
    attachments = [
        Attachment(
            id=str(att.get("id") or ""),
            name=str(att.get("file_name") or ""),
            mime_type=str(att.get("mime_type") or ""),
            size=int(att.get("size_bytes") or 0),
            url=url,
        )
        for att, url in zip(raw_attachments, urls)
    ]

    metadata = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
    gif = metadata.get("gif")
    reply_row = row.get("reply_to_message")
    reply_to = None
    if isinstance(reply_row, dict):
        reply_to = ReplyTo(
            id=str(reply_row.get("id") or ""),
            content=str(reply_row.get("body") or ""),
            sender_name=_joined_name(reply_row, default=""),
        )

    read_by = [
        ReadReceipt(
            user_id=str(read.get("user_id") or ""),
            user_name=_joined_name(read),
            read_at=str(read.get("read_at") or ""),
        )
        for read in row.get("message_reads") or []
        if isinstance(read, dict)
    ]

    return Message(
        id=str(row["id"]),
        content=str(row.get("body") or ""),
        sender_id=str(row.get("sender_id") or ""),
        sender_name=_joined_name(row, default=""),
        timestamp=str(row.get("created_at") or ""),
        attachments=attachments,
        gif=Gif.from_api(gif) if isinstance(gif, dict) else None,
        reactions=group_reactions(row.get("message_reactions") or []),
        reply_to=reply_to,
        read_by=read_by,
        is_edited=bool(metadata.get("isEdited", False)),
    )
