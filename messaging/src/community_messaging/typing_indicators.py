"""Ephemeral typing signals for the open conversation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .models import TYPING_TTL_MS, TypingIndicator, _now_ms
from .realtime import Channel, RealtimeClient

logger = logging.getLogger(__name__)

EVENT_TYPING = "typing"
EVENT_STOP_TYPING = "stop_typing"


def typing_topic(conversation_id: str) -> str:
    return f"typing:{conversation_id}"


class TypingIndicators:
    """Sends our own typing signal and tracks other participants'.

    Expiry is evaluated when reading: ``active()`` never returns an entry
    older than ``ttl_ms`` even if the sweeper has not pruned it yet.
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        user_id: str,
        user_name: str,
        *,
        ttl_ms: int = TYPING_TTL_MS,
        sweep_interval_s: float = 1.0,
        now_func: Callable[[], int] = _now_ms,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._realtime = realtime
        self.user_id = user_id
        self.user_name = user_name
        self.ttl_ms = ttl_ms
        self.sweep_interval_s = sweep_interval_s
        self._now = now_func
        self._on_change = on_change
        self._entries: Dict[str, TypingIndicator] = {}
        self._channel: Optional[Channel] = None
        self.conversation_id: Optional[str] = None
        self._stop_timer: asyncio.Task | None = None
        self._sweeper_task: asyncio.Task | None = None

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def attach(self, conversation_id: str) -> None:
        await self.detach()
        channel = self._realtime.channel(typing_topic(conversation_id))
        channel.on_broadcast(EVENT_TYPING, self.handle_typing)
        channel.on_broadcast(EVENT_STOP_TYPING, self.handle_stop)
        self.conversation_id = conversation_id
        self._channel = channel
        await channel.subscribe()

    async def detach(self) -> None:
        self._cancel_stop_timer()
        channel, self._channel = self._channel, None
        self.conversation_id = None
        if self._entries:
            self._entries.clear()
            self._changed()
        if channel is not None:
            await self._realtime.remove_channel(channel)

    def handle_typing(self, payload: Dict[str, Any]) -> None:
        user_id = payload.get("userId")
        if payload.get("conversationId") != self.conversation_id or not isinstance(user_id, str):
            return
        if user_id == self.user_id:
            return
        now_ms = self._now()
        existing = self._entries.get(user_id)
        if existing is not None:
            existing.timestamp_ms = now_ms
        else:
            self._entries[user_id] = TypingIndicator(
                user_id=user_id,
                user_name=str(payload.get("userName") or ""),
                conversation_id=self.conversation_id,
                timestamp_ms=now_ms,
            )
        self._changed()

    def handle_stop(self, payload: Dict[str, Any]) -> None:
        user_id = payload.get("userId")
        if isinstance(user_id, str) and self._entries.pop(user_id, None) is not None:
            self._changed()

    def active(self, now_ms: int | None = None) -> List[TypingIndicator]:
        now_ms = self._now() if now_ms is None else now_ms
        return [entry for entry in self._entries.values() if entry.is_active(now_ms, self.ttl_ms)]

    def prune(self, now_ms: int | None = None) -> int:
        now_ms = self._now() if now_ms is None else now_ms
        expired = [uid for uid, entry in self._entries.items() if not entry.is_active(now_ms, self.ttl_ms)]
        for user_id in expired:
            self._entries.pop(user_id, None)
        if expired:
            self._changed()
        return len(expired)

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_s)
                self.prune()
        except asyncio.CancelledError:
            return

    def _cancel_stop_timer(self) -> None:
        timer, self._stop_timer = self._stop_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _auto_stop(self) -> None:
        try:
            await asyncio.sleep(self.ttl_ms / 1000)
        except asyncio.CancelledError:
            return
        await self.stop_typing()

    async def start_typing(self) -> None:
        if self._channel is None or self.conversation_id is None:
            return
        await self._channel.send_broadcast(
            EVENT_TYPING,
            {"userId": self.user_id, "userName": self.user_name, "conversationId": self.conversation_id},
        )
        self._cancel_stop_timer()
        self._stop_timer = asyncio.create_task(self._auto_stop())

    async def stop_typing(self) -> None:
        if self._channel is None or self.conversation_id is None:
            return
        self._cancel_stop_timer()
        await self._channel.send_broadcast(
            EVENT_STOP_TYPING,
            {"userId": self.user_id, "conversationId": self.conversation_id},
        )
