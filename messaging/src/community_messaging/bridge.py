"""Translate realtime signals for the open conversation into store mutations."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .api_client import ApiError, MessagingApi
from .models import ReadReceipt, Signer, message_from_row
from .realtime import DELETE, INSERT, UPDATE, Channel, ChangeEvent, RealtimeClient, eq_filter
from .store import MessageStore

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
REACTIONS_TABLE = "message_reactions"
READS_TABLE = "message_reads"
EVENT_REFRESH = "refresh"
EVENT_REFRESH_MESSAGES = "refresh_messages"
EVENT_REACTION_CHANGE = "reaction_change"
EVENT_MESSAGE_INSERT = "message_insert"


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class EventBridge:
    """Per-conversation subscription: row feeds plus peer broadcasts.

    Reaction changes and refresh broadcasts always trigger a full refetch. A
    new row whose full record cannot be read falls back to a refetch, and so
    does a ``message_insert`` broadcast whose payload cannot be formatted.
    Switching conversations tears everything down and subscribes afresh.
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        api: MessagingApi,
        store: MessageStore,
        *,
        user_id: str,
        refetch: Callable[[], Awaitable[None]],
        signer: Signer | None = None,
        on_change: Callable[[], None] | None = None,
        on_directory_change: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._realtime = realtime
        self._api = api
        self._store = store
        self.user_id = user_id
        self._refetch = refetch
        self._signer = signer
        self._on_change = on_change
        self._on_directory_change = on_directory_change
        self._channel: Optional[Channel] = None
        self.conversation_id: Optional[str] = None

    @property
    def attached(self) -> bool:
        return self._channel is not None

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def _directory_changed(self) -> None:
        if self._on_directory_change is not None:
            await self._on_directory_change()

    async def attach(self, conversation_id: str) -> None:
        await self.detach()
        scope = eq_filter("conversation_id", conversation_id)
        channel = self._realtime.channel(conversation_topic(conversation_id))
        channel.on_postgres_changes(MESSAGES_TABLE, self.handle_message_change, filter=scope)
        channel.on_postgres_changes(REACTIONS_TABLE, self.handle_reaction_change, filter=scope)
        channel.on_postgres_changes(READS_TABLE, self.handle_read_change, event=INSERT, filter=scope)
        channel.on_broadcast(EVENT_REFRESH, self.handle_refresh)
        channel.on_broadcast(EVENT_REFRESH_MESSAGES, self.handle_refresh)
        channel.on_broadcast(EVENT_REACTION_CHANGE, self.handle_reaction_broadcast)
        channel.on_broadcast(EVENT_MESSAGE_INSERT, self.handle_message_insert)
        self.conversation_id = conversation_id
        self._channel = channel
        await channel.subscribe()
        logger.debug("bridge attached to %s", conversation_id)

    async def detach(self) -> None:
        channel, self._channel = self._channel, None
        self.conversation_id = None
        if channel is not None:
            await self._realtime.remove_channel(channel)

    async def broadcast_refresh(self, conversation_id: str) -> None:
        """Best-effort nudge so other clients revalidate."""

        if self._channel is None or self.conversation_id != conversation_id:
            return
        try:
            await self._channel.send_broadcast(EVENT_REFRESH, {"conversationId": conversation_id})
        except (ConnectionError, RuntimeError, aiohttp.ClientError):
            logger.warning("refresh broadcast for %s failed", conversation_id, exc_info=True)

    def _in_scope(self, record: Dict[str, Any]) -> bool:
        owner = record.get("conversation_id")
        return owner is None or str(owner) == self.conversation_id

    async def handle_message_change(self, change: ChangeEvent) -> None:
        conversation_id = self.conversation_id
        if conversation_id is None or not self._in_scope(change.record()):
            return
        if change.event_type == INSERT:
            await self._handle_insert(conversation_id, change.new)
        elif change.event_type == UPDATE:
            message_id = change.new.get("id")
            if message_id is not None and self._store.patch_content(str(message_id), str(change.new.get("body") or "")):
                self._changed()
        elif change.event_type == DELETE:
            message_id = change.old.get("id")
            if message_id is not None and self._store.remove(str(message_id)):
                self._changed()
            await self._directory_changed()

    async def _handle_insert(self, conversation_id: str, record: Dict[str, Any]) -> None:
        message_id = record.get("id")
        if message_id is None:
            await self._refetch()
            return
        message_id = str(message_id)
        if message_id not in self._store:
            try:
                row = await self._api.get_message_row(message_id)
                message = await message_from_row(row, self._signer)
            except (ApiError, aiohttp.ClientError, KeyError, ValueError):
                logger.warning("resolving message %s failed, refetching", message_id, exc_info=True)
                await self._refetch()
                return
            if self.conversation_id != conversation_id:
                return
            if self._store.insert(message):
                self._changed()
        if str(record.get("sender_id") or "") != self.user_id:
            await self._directory_changed()

    async def handle_reaction_change(self, change: ChangeEvent) -> None:
        if self.conversation_id is None:
            return
        await self._refetch()

    async def handle_read_change(self, change: ChangeEvent) -> None:
        if self.conversation_id is None or not self._in_scope(change.new):
            return
        message_id = change.new.get("message_id")
        reader = change.new.get("user_id")
        if message_id is None or reader is None:
            return
        receipt = ReadReceipt(user_id=str(reader), read_at=str(change.new.get("read_at") or ""))
        if self._store.add_read_receipt(str(message_id), receipt, mark_read=str(reader) == self.user_id):
            self._changed()

    async def handle_refresh(self, payload: Dict[str, Any]) -> None:
        if self.conversation_id is not None and payload.get("conversationId") == self.conversation_id:
            await self._refetch()

    async def handle_reaction_broadcast(self, payload: Dict[str, Any]) -> None:
        if self.conversation_id is None:
            return
        await self._refetch()

    async def handle_message_insert(self, payload: Dict[str, Any]) -> None:
        """Insert a message a peer pushed with its joined row attached."""

        conversation_id = self.conversation_id
        if conversation_id is None or payload.get("conversationId") != conversation_id:
            return
        row = payload.get("message")
        if not isinstance(row, dict) or row.get("id") is None:
            await self._refetch()
            return
        if str(row["id"]) in self._store:
            return
        try:
            message = await message_from_row(row, self._signer)
        except (KeyError, TypeError, ValueError):
            logger.warning("formatting broadcast message for %s failed, refetching", conversation_id, exc_info=True)
            await self._refetch()
            return
        if self.conversation_id != conversation_id:
            return
        if self._store.insert(message):
            self._changed()
