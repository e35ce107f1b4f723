"""Realtime channel contract plus an in-process implementation.

The orchestration layer only talks to :class:`RealtimeClient` and
:class:`Channel`; the hosted websocket transport lives in ``phoenix.py`` and
``LocalRealtime`` below serves single-process use and tests.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

PRESENCE_SYNC = "sync"
PRESENCE_JOIN = "join"
PRESENCE_LEAVE = "leave"

Handler = Callable[..., Optional[Awaitable[None]]]
Metas = Dict[str, List[Dict[str, Any]]]


@dataclass(frozen=True)
class ChangeEvent:
    """A row change delivered by the database change feed."""

    event_type: str
    table: str
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    schema: str = "public"

    def record(self) -> Dict[str, Any]:
        return self.old if self.event_type == DELETE else self.new


def parse_filter(expression: str | None) -> Tuple[str, str] | None:
    """Parse ``column=eq.value`` into ``(column, value)``."""

    if not expression:
        return None
    column, sep, rest = expression.partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError(f"unsupported filter: {expression}")
    return column, rest[len("eq.") :]


def eq_filter(column: str, value: str) -> str:
    return f"{column}=eq.{value}"


@dataclass
class PostgresBinding:
    table: str
    callback: Handler
    event: str = "*"
    filter: Optional[str] = None
    schema: str = "public"

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table or change.schema != self.schema:
            return False
        if self.event != "*" and self.event != change.event_type:
            return False
        parsed = parse_filter(self.filter)
        if parsed is None:
            return True
        column, value = parsed
        for row in (change.new, change.old):
            if column in row:
                return str(row[column]) == value
        return False

    def to_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            config["filter"] = self.filter
        return config


class PresenceState:
    """Tracks presence metas per key and derives join/leave sets.

    ``sync_state`` replaces the whole state (the server's full snapshot);
    ``sync_diff`` applies incremental joins and leaves.
    """

    def __init__(self) -> None:
        self._state: Metas = {}

    @staticmethod
    def _refs(metas: List[Dict[str, Any]]) -> set:
        return {m.get("phx_ref") for m in metas}

    def sync_state(self, new_state: Metas) -> Tuple[Metas, Metas]:
        joins: Metas = {}
        leaves: Metas = {}
        for key, metas in self._state.items():
            if key not in new_state:
                leaves[key] = list(metas)
        for key, metas in new_state.items():
            current = self._state.get(key)
            if current is None:
                joins[key] = list(metas)
                continue
            new_refs = self._refs(metas)
            cur_refs = self._refs(current)
            joined = [m for m in metas if m.get("phx_ref") not in cur_refs]
            left = [m for m in current if m.get("phx_ref") not in new_refs]
            if joined:
                joins[key] = joined
            if left:
                leaves[key] = left
        self._state = {key: list(metas) for key, metas in new_state.items()}
        return joins, leaves

    def sync_diff(self, joins: Metas, leaves: Metas) -> Tuple[Metas, Metas]:
        for key, metas in joins.items():
            current = self._state.setdefault(key, [])
            refs = self._refs(current)
            current.extend(m for m in metas if m.get("phx_ref") not in refs)
        for key, metas in leaves.items():
            current = self._state.get(key)
            if current is None:
                continue
            gone = self._refs(metas)
            remaining = [m for m in current if m.get("phx_ref") not in gone]
            if remaining:
                self._state[key] = remaining
            else:
                self._state.pop(key, None)
        return joins, leaves

    def snapshot(self) -> Metas:
        return {key: list(metas) for key, metas in self._state.items()}


async def _call(handler: Handler, *args: Any) -> None:
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("realtime handler %r failed", handler)


class Channel:
    """Common binding and dispatch bookkeeping for a realtime channel."""

    def __init__(self, topic: str, presence_key: str | None = None) -> None:
        self.topic = topic
        self.presence_key = presence_key
        self.status = CLOSED
        self._postgres: List[PostgresBinding] = []
        self._broadcast: Dict[str, List[Handler]] = {}
        self._presence_handlers: Dict[str, List[Handler]] = {}
        self._presence = PresenceState()
        self._status_callback: Handler | None = None

    def on_postgres_changes(
        self,
        table: str,
        callback: Handler,
        *,
        event: str = "*",
        filter: str | None = None,
        schema: str = "public",
    ) -> "Channel":
        parse_filter(filter)
        self._postgres.append(PostgresBinding(table=table, callback=callback, event=event, filter=filter, schema=schema))
        return self

    def on_broadcast(self, event: str, callback: Handler) -> "Channel":
        self._broadcast.setdefault(event, []).append(callback)
        return self

    def on_presence(self, event: str, callback: Handler) -> "Channel":
        if event not in {PRESENCE_SYNC, PRESENCE_JOIN, PRESENCE_LEAVE}:
            raise ValueError(f"unknown presence event: {event}")
        self._presence_handlers.setdefault(event, []).append(callback)
        return self

    def presence_state(self) -> Metas:
        return self._presence.snapshot()

    @property
    def postgres_bindings(self) -> List[PostgresBinding]:
        return list(self._postgres)

    async def _set_status(self, status: str) -> None:
        self.status = status
        if self._status_callback is not None:
            await _call(self._status_callback, status)

    async def _dispatch_change(self, change: ChangeEvent) -> None:
        for binding in list(self._postgres):
            if binding.matches(change):
                await _call(binding.callback, change)

    async def _dispatch_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._broadcast.get(event, [])):
            await _call(handler, payload)

    async def _presence_changes(self, joins: Metas, leaves: Metas) -> None:
        current = self._presence.snapshot()
        for key, metas in joins.items():
            for handler in list(self._presence_handlers.get(PRESENCE_JOIN, [])):
                await _call(handler, key, current.get(key, []), metas)
        for key, metas in leaves.items():
            for handler in list(self._presence_handlers.get(PRESENCE_LEAVE, [])):
                await _call(handler, key, current.get(key, []), metas)
        for handler in list(self._presence_handlers.get(PRESENCE_SYNC, [])):
            await _call(handler)

    async def _apply_presence_state(self, state: Metas) -> None:
        joins, leaves = self._presence.sync_state(state)
        await self._presence_changes(joins, leaves)

    async def _apply_presence_diff(self, joins: Metas, leaves: Metas) -> None:
        self._presence.sync_diff(joins, leaves)
        await self._presence_changes(joins, leaves)

    async def subscribe(self, status_callback: Handler | None = None) -> "Channel":
        raise NotImplementedError

    async def send_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def track(self, meta: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def unsubscribe(self) -> None:
        raise NotImplementedError


class RealtimeClient:
    """Factory for channels on one realtime connection."""

    def channel(self, topic: str, presence_key: str | None = None) -> Channel:
        raise NotImplementedError

    async def remove_channel(self, channel: Channel) -> None:
        await channel.unsubscribe()

    async def close(self) -> None:
        raise NotImplementedError


class LocalChannel(Channel):
    def __init__(self, hub: "LocalRealtime", topic: str, presence_key: str | None = None) -> None:
        super().__init__(topic, presence_key)
        self._hub = hub
        self._tracked_refs: List[str] = []

    async def subscribe(self, status_callback: Handler | None = None) -> "LocalChannel":
        self._status_callback = status_callback
        self._hub._attach(self)
        await self._set_status(SUBSCRIBED)
        if self.status == SUBSCRIBED:
            await self._apply_presence_state(self._hub._presence_snapshot(self.topic))
        return self

    async def send_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        await self._hub._broadcast(self, event, payload)

    async def track(self, meta: Dict[str, Any]) -> None:
        if self.status != SUBSCRIBED:
            raise RuntimeError(f"channel {self.topic} is not subscribed")
        key = self.presence_key or ""
        ref = self._hub._next_ref()
        self._tracked_refs.append(ref)
        await self._hub._presence_join(self.topic, key, dict(meta, phx_ref=ref))

    async def unsubscribe(self) -> None:
        if self.status == CLOSED:
            return
        self._hub._detach(self)
        refs, self._tracked_refs = self._tracked_refs, []
        await self._set_status(CLOSED)
        if refs:
            await self._hub._presence_leave(self.topic, self.presence_key or "", refs)


class LocalRealtime(RealtimeClient):
    """In-process realtime hub.

    Broadcasts reach every other subscribed channel on the same topic (never
    the sender), ``emit_change`` feeds row events to matching bindings, and
    presence is kept per topic.
    """

    def __init__(self) -> None:
        self._channels: List[LocalChannel] = []
        self._presence: Dict[str, Metas] = {}
        self._refs = itertools.count(1)

    def channel(self, topic: str, presence_key: str | None = None) -> LocalChannel:
        return LocalChannel(self, topic, presence_key)

    async def close(self) -> None:
        for channel in list(self._channels):
            await channel.unsubscribe()

    @property
    def channels(self) -> List[LocalChannel]:
        return list(self._channels)

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _attach(self, channel: LocalChannel) -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    def _detach(self, channel: LocalChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _subscribers(self, topic: str) -> List[LocalChannel]:
        return [c for c in self._channels if c.topic == topic and c.status == SUBSCRIBED]

    def _presence_snapshot(self, topic: str) -> Metas:
        return {key: list(metas) for key, metas in self._presence.get(topic, {}).items()}

    async def _broadcast(self, sender: LocalChannel, event: str, payload: Dict[str, Any]) -> None:
        for channel in self._subscribers(sender.topic):
            if channel is sender:
                continue
            await channel._dispatch_broadcast(event, dict(payload))

    async def _presence_join(self, topic: str, key: str, meta: Dict[str, Any]) -> None:
        self._presence.setdefault(topic, {}).setdefault(key, []).append(meta)
        for channel in self._subscribers(topic):
            await channel._apply_presence_diff({key: [meta]}, {})

    async def _presence_leave(self, topic: str, key: str, refs: List[str]) -> None:
        topic_state = self._presence.get(topic, {})
        current = topic_state.get(key, [])
        left = [m for m in current if m.get("phx_ref") in refs]
        remaining = [m for m in current if m.get("phx_ref") not in refs]
        if remaining:
            topic_state[key] = remaining
        else:
            topic_state.pop(key, None)
        if not left:
            return
        for channel in self._subscribers(topic):
            await channel._apply_presence_diff({}, {key: left})

    async def emit_change(
        self,
        table: str,
        event_type: str,
        new: Dict[str, Any] | None = None,
        old: Dict[str, Any] | None = None,
        *,
        schema: str = "public",
    ) -> None:
        change = ChangeEvent(event_type=event_type, table=table, new=dict(new or {}), old=dict(old or {}), schema=schema)
        for channel in [c for c in self._channels if c.status == SUBSCRIBED]:
            await channel._dispatch_change(change)
