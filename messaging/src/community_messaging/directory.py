from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import aiohttp

from .api_client import ApiError, MessagingApi
from .models import Conversation

logger = logging.getLogger(__name__)


class ConversationDirectory:
    """Full conversation list for the signed-in identity.

    Every call refetches the whole list; there is no pagination.
    """

    def __init__(self, api: MessagingApi) -> None:
        self._api = api
        self._conversations: List[Conversation] = []
        self.error: Optional[str] = None

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def fetch(self) -> List[Conversation]:
        try:
            self._conversations = await self._api.list_conversations()
            self.error = None
        except (ApiError, aiohttp.ClientError):
            logger.exception("fetching conversations failed")
            self.error = "Failed to fetch conversations"
        return self.conversations

    async def refresh(self) -> None:
        await self.fetch()

    def find_direct(self, user_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.is_direct_with(user_id):
                return conversation
        return None

    async def create(self, participant_ids: Sequence[str], is_group: bool = False) -> Conversation:
        """Create a conversation; callers check ``find_direct`` first for 1:1."""

        conversation = await self._api.create_conversation(participant_ids, is_group=is_group)
        if self.get(conversation.id) is None:
            self._conversations.append(conversation)
        await self.refresh()
        return self.get(conversation.id) or conversation

    async def open_direct(self, user_id: str) -> Conversation:
        await self.fetch()
        existing = self.find_direct(user_id)
        if existing is not None:
            return existing
        return await self.create([user_id], is_group=False)

    async def delete(self, conversation_id: str) -> None:
        await self._api.delete_conversation(conversation_id)
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
