"""Unified messaging orchestration for members and admins.

One :class:`MessagingSession` owns the conversation directory, the message
store of the open conversation and every realtime subscription. Views read
its properties and call its coroutines; they never mutate state directly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Set

import aiohttp

from .api_client import DIRECTION_NEWER, DIRECTION_OLDER, ApiError, MessagingApi, MessagingError
from .bridge import EventBridge
from .config import MessagingConfig
from .directory import ConversationDirectory
from .models import (
    TEMP_ID_PREFIX,
    Attachment,
    Contact,
    Conversation,
    ConversationSettings,
    Gif,
    Message,
    PinnedMessage,
    ReplyTo,
    Signer,
    TypingIndicator,
    is_valid_send,
    now_iso,
)
from .presence import PresenceTracker
from .realtime import Channel, RealtimeClient
from .store import MessageStore
from .typing_indicators import TypingIndicators

logger = logging.getLogger(__name__)

ROLE_MEMBER = "member"
ROLE_ADMIN = "admin"
CONVERSATIONS_TOPIC = "conversations"

Listener = Callable[[], None]


class SendFailed(MessagingError):
    pass


@dataclass(frozen=True)
class Identity:
    user_id: str
    name: str
    role: str = ROLE_MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class ReconcilePolicy:
    """Refetch the open conversation every ``interval_s`` regardless of events."""

    interval_s: Optional[float] = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.interval_s) and self.interval_s > 0


def _temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}"


class MessagingSession:
    def __init__(
        self,
        identity: Identity,
        api: MessagingApi,
        realtime: RealtimeClient,
        *,
        signer: Signer | None = None,
        reconcile: ReconcilePolicy | None = None,
        typing_ttl_ms: int = 3000,
        typing_sweep_interval_s: float = 1.0,
        page_size: int = 50,
        now_func: Callable[[], int] | None = None,
    ) -> None:
        self.identity = identity
        self._api = api
        self._realtime = realtime
        self._signer = signer
        self.reconcile = reconcile or ReconcilePolicy()
        self.page_size = page_size
        self._listeners: List[Listener] = []
        self.error: Optional[str] = None
        self.is_loading = False

        self.directory = ConversationDirectory(api)
        self.store = MessageStore()
        self._selected: Optional[Conversation] = None
        self.pinned: List[PinnedMessage] = []
        self._has_more_older = True

        self.presence = PresenceTracker(realtime, identity.user_id, on_change=self._notify)
        typing_kwargs = {"ttl_ms": typing_ttl_ms, "sweep_interval_s": typing_sweep_interval_s, "on_change": self._notify}
        if now_func is not None:
            typing_kwargs["now_func"] = now_func
        self.typing = TypingIndicators(realtime, identity.user_id, identity.name, **typing_kwargs)
        self.bridge = EventBridge(
            realtime,
            api,
            self.store,
            user_id=identity.user_id,
            refetch=self.refresh_messages,
            signer=signer,
            on_change=self._notify,
            on_directory_change=self.refresh_conversations,
        )
        self._conversations_channel: Optional[Channel] = None
        self._reconcile_task: asyncio.Task | None = None
        self._started = False

    @classmethod
    def from_config(
        cls,
        identity: Identity,
        config: MessagingConfig,
        api: MessagingApi,
        realtime: RealtimeClient,
        *,
        signer: Signer | None = None,
    ) -> "MessagingSession":
        interval = config.reconcile_interval_s if config.reconcile_enabled else None
        return cls(
            identity,
            api,
            realtime,
            signer=signer,
            reconcile=ReconcilePolicy(interval_s=interval),
            typing_ttl_ms=config.typing_ttl_ms,
            typing_sweep_interval_s=config.typing_sweep_interval_s,
            page_size=config.page_size,
        )

    # -- read-only view state -------------------------------------------

    @property
    def conversations(self) -> List[Conversation]:
        return self.directory.conversations

    @property
    def selected(self) -> Optional[Conversation]:
        return self._selected

    @property
    def messages(self) -> List[Message]:
        return self.store.messages

    @property
    def online_users(self) -> Set[str]:
        return self.presence.online_users

    def typing_indicators(self, now_ms: int | None = None) -> List[TypingIndicator]:
        return self.typing.active(now_ms)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("listener %r failed", listener)

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.is_loading = True
        await self.refresh_conversations()
        self.is_loading = False
        await self.presence.start()
        channel = self._realtime.channel(CONVERSATIONS_TOPIC)
        channel.on_postgres_changes("conversations", self._on_conversation_row)
        self._conversations_channel = channel
        await channel.subscribe()
        self.typing.start_sweeper()
        self._notify()

    async def close(self) -> None:
        await self._stop_reconcile()
        await self.typing.stop_sweeper()
        await self.typing.detach()
        await self.bridge.detach()
        channel, self._conversations_channel = self._conversations_channel, None
        if channel is not None:
            await self._realtime.remove_channel(channel)
        await self.presence.stop()
        self._started = False

    async def __aenter__(self) -> "MessagingSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _on_conversation_row(self, _change) -> None:
        await self.refresh_conversations()

    # -- reconciliation --------------------------------------------------

    def _start_reconcile(self) -> None:
        if self.reconcile.enabled and self._reconcile_task is None:
            self._reconcile_task = asyncio.create_task(self._reconcile_loop())

    async def _stop_reconcile(self) -> None:
        task, self._reconcile_task = self._reconcile_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _reconcile_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.reconcile.interval_s)
                if self._selected is not None:
                    await self.refresh_messages()
        except asyncio.CancelledError:
            return

    # -- directory -------------------------------------------------------

    async def refresh_conversations(self) -> None:
        await self.directory.fetch()
        if self.directory.error:
            self.error = self.directory.error
        if self._selected is not None:
            fresh = self.directory.get(self._selected.id)
            if fresh is not None:
                self._selected = fresh
        self._notify()

    async def create_conversation(self, participant_ids: Sequence[str], is_group: bool = False) -> Optional[Conversation]:
        try:
            conversation = await self.directory.create(participant_ids, is_group=is_group)
        except (ApiError, aiohttp.ClientError):
            logger.exception("creating conversation failed")
            self.error = "Failed to create conversation"
            self._notify()
            return None
        self._notify()
        return conversation

    async def open_direct(self, member_id: str) -> Optional[Conversation]:
        """Open the 1:1 conversation with ``member_id``, creating it if needed."""

        self.is_loading = True
        self.error = None
        try:
            conversation = await self.directory.open_direct(member_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("opening conversation with %s failed", member_id)
            self.error = "Failed to create conversation"
            self.is_loading = False
            self._notify()
            return None
        await self.select_conversation(conversation)
        self.is_loading = False
        self._notify()
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        try:
            await self.directory.delete(conversation_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("deleting conversation %s failed", conversation_id)
            return
        if self._selected is not None and self._selected.id == conversation_id:
            await self.select_conversation(None)
        self._notify()

    async def clear_conversation(self) -> None:
        conversation = self._selected
        if conversation is None:
            return
        try:
            await self._api.clear_conversation(conversation.id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("clearing conversation %s failed", conversation.id)
            self.error = "Failed to clear conversation"
            self._notify()
            return
        await self.refresh_messages()
        await self.refresh_conversations()

    async def mark_conversation_read(self) -> None:
        conversation = self._selected
        if conversation is None:
            return
        try:
            await self._api.mark_conversation_read(conversation.id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("marking conversation %s read failed", conversation.id)
            return
        await self.refresh_messages()
        await self.refresh_conversations()

    # -- contacts, gifs, pins and settings -------------------------------

    async def search_contacts(self, search: str = "", *, limit: int = 50) -> List[Contact]:
        try:
            return await self._api.search_contacts(search, limit=limit)
        except (ApiError, aiohttp.ClientError):
            logger.exception("searching contacts failed")
            self.error = "Failed to fetch contacts"
            self._notify()
            return []

    async def start_direct(self, user_id: str) -> Optional[Conversation]:
        """Start a 1:1 chat; admins create it directly, members go through contacts."""

        if self.identity.is_admin:
            return await self.open_direct(user_id)
        self.error = None
        try:
            conversation_id = await self._api.start_contact_conversation(user_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("starting conversation with %s failed", user_id)
            self.error = "Failed to create conversation"
            self._notify()
            return None
        await self.refresh_conversations()
        conversation = self.directory.get(conversation_id)
        if conversation is None:
            logger.warning("conversation %s missing after refresh", conversation_id)
            self.error = "Failed to create conversation"
            self._notify()
            return None
        await self.select_conversation(conversation)
        return conversation

    async def search_gifs(self, query: str = "") -> List[Gif]:
        """Search GIFs; a blank query returns the trending set."""

        try:
            if query.strip():
                return await self._api.search_gifs(query.strip())
            return await self._api.trending_gifs()
        except (ApiError, aiohttp.ClientError):
            logger.exception("loading gifs failed")
            self.error = "Failed to load GIFs"
            self._notify()
            return []

    async def refresh_pinned(self) -> None:
        conversation = self._selected
        if conversation is None:
            return
        try:
            pinned = await self._api.list_pinned_messages(conversation.id)
        except (ApiError, aiohttp.ClientError):
            logger.warning("fetching pinned messages for %s failed", conversation.id, exc_info=True)
            return
        if self._selected is None or self._selected.id != conversation.id:
            return
        self.pinned = pinned
        self._notify()

    async def pin_message(self, message_id: str) -> bool:
        conversation = self._selected
        if conversation is None:
            return False
        try:
            await self._api.pin_message(conversation.id, message_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("pinning message %s failed", message_id)
            self.error = "Failed to pin message"
            self._notify()
            return False
        await self.refresh_pinned()
        return True

    async def unpin_message(self, pinned_id: str) -> bool:
        try:
            await self._api.unpin_message(pinned_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("unpinning %s failed", pinned_id)
            self.error = "Failed to unpin message"
            self._notify()
            return False
        await self.refresh_pinned()
        return True

    async def conversation_settings(self) -> Optional[ConversationSettings]:
        conversation = self._selected
        if conversation is None:
            return None
        try:
            return await self._api.get_conversation_settings(conversation.id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("fetching settings for %s failed", conversation.id)
            self.error = "Failed to fetch settings"
            self._notify()
            return None

    async def update_conversation_settings(
        self, settings: ConversationSettings
    ) -> Optional[ConversationSettings]:
        conversation = self._selected
        if conversation is None:
            return None
        try:
            stored = await self._api.update_conversation_settings(conversation.id, settings)
        except (ApiError, aiohttp.ClientError):
            logger.exception("updating settings for %s failed", conversation.id)
            self.error = "Failed to update settings"
            self._notify()
            return None
        self._notify()
        return stored

    # -- selection and fetching -----------------------------------------

    async def select_conversation(self, conversation: Conversation | None) -> None:
        await self._stop_reconcile()
        await self.typing.detach()
        await self.bridge.detach()
        self._selected = conversation
        self.store.reset(conversation.id if conversation else None)
        self.pinned = []
        self._has_more_older = True
        self._notify()
        if conversation is None:
            return
        await self.refresh_messages()
        if self._selected is None or self._selected.id != conversation.id:
            return
        await self.bridge.attach(conversation.id)
        await self.typing.attach(conversation.id)
        self._start_reconcile()
        await self.refresh_pinned()

    async def _fetch_page(self, conversation_id: str, *, cursor: str | None, direction: str) -> Optional[List[Message]]:
        try:
            page = await self._api.list_messages(
                conversation_id, cursor=cursor, direction=direction, limit=self.page_size
            )
        except (ApiError, aiohttp.ClientError):
            logger.exception("fetching messages for %s failed", conversation_id)
            self.error = "Failed to fetch messages"
            self._notify()
            return None
        if self.store.conversation_id != conversation_id:
            logger.debug("discarding stale page for %s", conversation_id)
            return None
        return page

    async def refresh_messages(self) -> None:
        conversation = self._selected
        if conversation is None:
            return
        page = await self._fetch_page(conversation.id, cursor=None, direction=DIRECTION_OLDER)
        if page is None:
            return
        self.store.replace_confirmed(page)
        self._notify()

    async def load_older(self) -> int:
        conversation = self._selected
        if conversation is None or not self._has_more_older:
            return 0
        confirmed = [m for m in self.store.sorted_messages() if not m.is_optimistic]
        if not confirmed:
            return 0
        page = await self._fetch_page(conversation.id, cursor=confirmed[0].id, direction=DIRECTION_OLDER)
        if page is None:
            return 0
        if len(page) < self.page_size:
            self._has_more_older = False
        added = self.store.extend_older(page)
        self._notify()
        return added

    async def load_newer(self) -> int:
        conversation = self._selected
        if conversation is None:
            return 0
        confirmed = [m for m in self.store.sorted_messages() if not m.is_optimistic]
        cursor = confirmed[-1].id if confirmed else None
        page = await self._fetch_page(conversation.id, cursor=cursor, direction=DIRECTION_NEWER)
        if page is None:
            return 0
        added = self.store.prepend_newer(page) if cursor else self.store.extend_older(page)
        self._notify()
        return added

    # -- send pipeline ---------------------------------------------------

    async def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        reply_to: ReplyTo | None = None,
        gif: Gif | None = None,
    ) -> bool:
        """Optimistically append, write durably, then reconcile.

        Returns ``False`` without side effects for an empty payload. Raises
        :class:`SendFailed` after rolling back when the write fails.
        """

        conversation = self._selected
        attachments = list(attachments or [])
        if conversation is None or not is_valid_send(content, attachments, gif):
            return False

        temp_id = _temp_id()
        while temp_id in self.store:
            temp_id = f"{temp_id}-1"
        optimistic = Message(
            id=temp_id,
            content=content or "",
            sender_id=self.identity.user_id,
            sender_name=self.identity.name,
            timestamp=now_iso(),
            attachments=[
                Attachment(
                    id=f"{TEMP_ID_PREFIX}{a.name}",
                    name=a.name,
                    mime_type=a.mime_type,
                    size=a.size,
                    url="",
                )
                for a in attachments
            ],
            gif=gif,
            reply_to=reply_to,
            is_optimistic=True,
        )
        self.store.insert(optimistic)
        self._notify()

        try:
            await self._api.send_message(
                conversation.id,
                content,
                attachments=attachments,
                reply_to_id=reply_to.id if reply_to else None,
                gif=gif,
            )
        except (ApiError, aiohttp.ClientError, OSError) as exc:
            self.store.remove(temp_id)
            self.error = "Failed to send message"
            logger.warning("sending to %s failed: %s", conversation.id, exc)
            self._notify()
            raise SendFailed(str(exc)) from exc

        self.store.remove(temp_id)
        self._notify()
        await self.refresh_messages()
        await self.refresh_conversations()
        await self.bridge.broadcast_refresh(conversation.id)
        return True

    # -- per-message intents --------------------------------------------

    async def mark_message_read(self, message_id: str) -> None:
        try:
            await self._api.mark_message_read(message_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("marking message %s read failed", message_id)
            return
        if self.store.mark_read(message_id):
            self._notify()
        await self.refresh_conversations()

    async def toggle_reaction(self, message_id: str, emoji: str) -> None:
        try:
            await self._api.toggle_reaction(message_id, emoji)
        except (ApiError, aiohttp.ClientError):
            logger.exception("toggling reaction on %s failed", message_id)
            return
        await self.refresh_messages()

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self.toggle_reaction(message_id, emoji)

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self.toggle_reaction(message_id, emoji)

    async def edit_message(self, message_id: str, content: str) -> bool:
        try:
            body = await self._api.edit_message(message_id, content)
        except (ApiError, aiohttp.ClientError):
            logger.exception("editing message %s failed", message_id)
            return False
        if self.store.patch_content(message_id, body):
            self._notify()
        await self.refresh_conversations()
        return True

    async def delete_message(self, message_id: str) -> bool:
        try:
            await self._api.delete_message(message_id)
        except (ApiError, aiohttp.ClientError):
            logger.exception("deleting message %s failed", message_id)
            return False
        if self.store.remove(message_id):
            self._notify()
        await self.refresh_conversations()
        return True

    # -- typing ----------------------------------------------------------

    async def start_typing(self) -> None:
        await self.typing.start_typing()

    async def stop_typing(self) -> None:
        await self.typing.stop_typing()
