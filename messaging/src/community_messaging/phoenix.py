"""Websocket transport for the hosted realtime service (Phoenix channels)."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import WSMsgType

from .realtime import (
    CHANNEL_ERROR,
    CLOSED,
    SUBSCRIBED,
    TIMED_OUT,
    Channel,
    ChangeEvent,
    Handler,
    Metas,
    RealtimeClient,
)

logger = logging.getLogger(__name__)

PROTOCOL_VSN = "1.0.0"
PHOENIX_TOPIC = "phoenix"
TOPIC_PREFIX = "realtime:"


def _full_topic(topic: str) -> str:
    return topic if topic.startswith(TOPIC_PREFIX) else f"{TOPIC_PREFIX}{topic}"


def _unwrap_metas(raw: Any) -> Metas:
    """Presence payloads nest metas as ``{key: {"metas": [...]}}``."""

    if not isinstance(raw, dict):
        return {}
    metas: Metas = {}
    for key, entry in raw.items():
        if isinstance(entry, dict):
            entry = entry.get("metas")
        if isinstance(entry, list):
            metas[str(key)] = [m for m in entry if isinstance(m, dict)]
    return metas


class PhoenixChannel(Channel):
    def __init__(self, client: "PhoenixRealtime", topic: str, presence_key: str | None = None) -> None:
        super().__init__(topic, presence_key)
        self._client = client
        self.full_topic = _full_topic(topic)
        self.join_ref: Optional[str] = None

    def _join_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": self.presence_key or ""},
                "postgres_changes": [binding.to_config() for binding in self.postgres_bindings],
            }
        }
        if self._client.access_token:
            payload["access_token"] = self._client.access_token
        return payload

    async def subscribe(self, status_callback: Handler | None = None) -> "PhoenixChannel":
        self._status_callback = status_callback
        await self._client.connect()
        self._client._attach(self)
        ref = self._client._next_ref()
        self.join_ref = ref
        reply = self._client._expect_reply(ref)
        await self._client._push(self.full_topic, "phx_join", self._join_payload(), ref=ref, join_ref=ref)
        try:
            payload = await asyncio.wait_for(reply, timeout=self._client.join_timeout_s)
        except asyncio.TimeoutError:
            self._client._forget_reply(ref)
            logger.warning("join %s timed out", self.full_topic)
            await self._set_status(TIMED_OUT)
            return self
        if payload.get("status") == "ok":
            await self._set_status(SUBSCRIBED)
        else:
            logger.warning("join %s rejected: %s", self.full_topic, payload.get("response"))
            await self._set_status(CHANNEL_ERROR)
        return self

    async def send_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        if self.status != SUBSCRIBED:
            logger.warning("dropping broadcast %s on unjoined channel %s", event, self.full_topic)
            return
        await self._client._push(
            self.full_topic,
            "broadcast",
            {"type": "broadcast", "event": event, "payload": payload},
            join_ref=self.join_ref,
        )

    async def track(self, meta: Dict[str, Any]) -> None:
        if self.status != SUBSCRIBED:
            raise RuntimeError(f"channel {self.full_topic} is not subscribed")
        await self._client._push(
            self.full_topic,
            "presence",
            {"type": "presence", "event": "track", "payload": meta},
            join_ref=self.join_ref,
        )

    async def unsubscribe(self) -> None:
        self._client._detach(self)
        if self.status == SUBSCRIBED and self._client.connected:
            await self._client._push(self.full_topic, "phx_leave", {}, join_ref=self.join_ref)
        await self._set_status(CLOSED)

    async def _handle(self, event: str, payload: Dict[str, Any]) -> None:
        if event == "postgres_changes":
            data = payload.get("data") or {}
            change = ChangeEvent(
                event_type=str(data.get("type") or ""),
                table=str(data.get("table") or ""),
                new=data.get("record") or {},
                old=data.get("old_record") or {},
                schema=str(data.get("schema") or "public"),
            )
            await self._dispatch_change(change)
        elif event == "broadcast":
            inner = payload.get("payload")
            await self._dispatch_broadcast(str(payload.get("event") or ""), inner if isinstance(inner, dict) else {})
        elif event == "presence_state":
            await self._apply_presence_state(_unwrap_metas(payload))
        elif event == "presence_diff":
            await self._apply_presence_diff(_unwrap_metas(payload.get("joins")), _unwrap_metas(payload.get("leaves")))
        elif event == "phx_error":
            await self._set_status(CHANNEL_ERROR)
        elif event == "phx_close":
            await self._set_status(CLOSED)
        else:
            logger.debug("ignoring %s on %s", event, self.full_topic)


class PhoenixRealtime(RealtimeClient):
    """One websocket carrying every channel, with a periodic heartbeat.

    Reconnection is not attempted: when the socket drops, every channel moves
    to ``CLOSED`` and callers re-subscribe.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: str = "",
        access_token: str = "",
        heartbeat_interval_s: float = 30,
        join_timeout_s: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.access_token = access_token
        self.heartbeat_interval_s = heartbeat_interval_s
        self.join_timeout_s = join_timeout_s
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._refs = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._channels: List[PhoenixChannel] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def channel(self, topic: str, presence_key: str | None = None) -> PhoenixChannel:
        return PhoenixChannel(self, topic, presence_key)

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _attach(self, channel: PhoenixChannel) -> None:
        if channel not in self._channels:
            self._channels.append(channel)

    def _detach(self, channel: PhoenixChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _expect_reply(self, ref: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        return future

    def _forget_reply(self, ref: str) -> None:
        self._pending.pop(ref, None)

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            params = {"vsn": PROTOCOL_VSN}
            if self.api_key:
                params["apikey"] = self.api_key
            self._ws = await self._session.ws_connect(self.url, params=params)
            self._reader_task = asyncio.create_task(self._reader())
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
            logger.debug("connected to %s", self.url)

    async def close(self) -> None:
        for channel in list(self._channels):
            await channel.unsubscribe()
        tasks = [t for t in (self._heartbeat_task, self._reader_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat_task = None
        self._reader_task = None
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _push(
        self,
        topic: str,
        event: str,
        payload: Dict[str, Any],
        *,
        ref: str | None = None,
        join_ref: str | None = None,
    ) -> str:
        if not self.connected:
            raise ConnectionError("realtime socket is not connected")
        ref = ref or self._next_ref()
        frame: Dict[str, Any] = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        if join_ref is not None:
            frame["join_ref"] = join_ref
        async with self._send_lock:
            await self._ws.send_json(frame)
        return ref

    async def _heartbeat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval_s)
                if not self.connected:
                    return
                await self._push(PHOENIX_TOPIC, "heartbeat", {})
        except asyncio.CancelledError:
            return
        except ConnectionError:
            return

    async def _reader(self) -> None:
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("discarding malformed realtime frame")
                        continue
                    await self._route(frame)
                elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                    break
        except asyncio.CancelledError:
            return
        await self._on_disconnect()

    async def _on_disconnect(self) -> None:
        logger.warning("realtime socket closed")
        for future in self._pending.values():
            if not future.done():
                future.set_result({"status": "error", "response": {"reason": "socket closed"}})
        self._pending.clear()
        for channel in list(self._channels):
            await channel._set_status(CLOSED)
        self._channels.clear()

    async def _route(self, frame: Dict[str, Any]) -> None:
        topic = frame.get("topic")
        event = frame.get("event")
        payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}
        if event == "phx_reply":
            future = self._pending.pop(str(frame.get("ref")), None)
            if future is not None and not future.done():
                future.set_result(payload)
            return
        if topic == PHOENIX_TOPIC:
            return
        for channel in [c for c in self._channels if c.full_topic == topic]:
            await channel._handle(str(event), payload)
