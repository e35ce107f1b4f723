from __future__ import annotations

import logging
from typing import Callable, List, Optional, Set

from .models import now_iso
from .realtime import (
    CHANNEL_ERROR,
    CLOSED,
    PRESENCE_JOIN,
    PRESENCE_LEAVE,
    PRESENCE_SYNC,
    SUBSCRIBED,
    TIMED_OUT,
    Channel,
    RealtimeClient,
)

logger = logging.getLogger(__name__)

PRESENCE_TOPIC = "presence"


class PresenceTracker:
    """Online identities seen on the process-wide presence channel.

    ``sync`` rebuilds the set from the channel state; ``join``/``leave``
    adjust it incrementally. A leave is trusted as-is. Losing the channel
    empties the set.
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        user_id: str,
        *,
        on_change: Callable[[], None] | None = None,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        self._realtime = realtime
        self.user_id = user_id
        self._on_change = on_change
        self._clock = clock
        self._online: Set[str] = set()
        self._channel: Optional[Channel] = None

    @property
    def online_users(self) -> Set[str]:
        return set(self._online)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def start(self) -> None:
        if self._channel is not None:
            return
        channel = self._realtime.channel(PRESENCE_TOPIC, presence_key=self.user_id)
        channel.on_presence(PRESENCE_SYNC, self._handle_sync)
        channel.on_presence(PRESENCE_JOIN, self._handle_join)
        channel.on_presence(PRESENCE_LEAVE, self._handle_leave)
        self._channel = channel
        await channel.subscribe(self._handle_status)

    async def stop(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await self._realtime.remove_channel(channel)
        self._online = set()

    async def _handle_status(self, status: str) -> None:
        if status in (CLOSED, CHANNEL_ERROR, TIMED_OUT):
            logger.debug("presence channel %s", status)
            if self._online:
                self._online = set()
                self._changed()
            return
        if status != SUBSCRIBED or self._channel is None:
            return
        await self._channel.track({"user_id": self.user_id, "online_at": self._clock()})

    def _handle_sync(self) -> None:
        if self._channel is None:
            return
        online: Set[str] = set()
        for metas in self._channel.presence_state().values():
            for meta in metas:
                user_id = meta.get("user_id")
                if isinstance(user_id, str):
                    online.add(user_id)
        self._online = online
        self._changed()

    def _handle_join(self, key: str, current: List[dict], new_presences: List[dict]) -> None:
        logger.debug("presence join %s", key)
        self._online.add(key)
        self._changed()

    def _handle_leave(self, key: str, current: List[dict], left_presences: List[dict]) -> None:
        logger.debug("presence leave %s", key)
        self._online.discard(key)
        self._changed()
