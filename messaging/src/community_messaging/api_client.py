"""aiohttp client for the community messaging REST API."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .models import Attachment, Contact, Conversation, ConversationSettings, Gif, Message, PinnedMessage

logger = logging.getLogger(__name__)

DIRECTION_OLDER = "older"
DIRECTION_NEWER = "newer"


class MessagingError(Exception):
    """Base class for messaging client failures."""


class ApiError(MessagingError):
    def __init__(self, status: int, message: str, *, method: str = "", path: str = ""):
        self.status = status
        self.message = message
        self.method = method
        self.path = path
        super().__init__(f"{method} {path} failed with {status}: {message}".strip())


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class MessagingApi:
    """Thin async wrapper over the messaging endpoints.

    The client never retries; every non-2xx response becomes an
    :class:`ApiError` carrying the server's ``{"error": ...}`` text.
    """

    def __init__(
        self,
        base_url: str,
        *,
        access_token: str = "",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url
        self.access_token = access_token
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        data: Any = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        url = _build_url(self.base_url, path)
        logger.debug("%s %s", method, url)
        async with self._client().request(
            method,
            url,
            json=json_body,
            data=data,
            params=params,
            headers=self._headers(),
        ) as response:
            raw = await response.text()
            payload: Any = None
            if raw:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
            if response.status >= 400:
                raise ApiError(
                    response.status,
                    _error_message(payload, response.reason or "request failed"),
                    method=method,
                    path=path,
                )
        return payload if isinstance(payload, dict) else {}

    async def list_conversations(self) -> List[Conversation]:
        payload = await self._request("GET", "/conversations")
        return [Conversation.from_api(c) for c in payload.get("conversations") or [] if isinstance(c, dict)]

    async def create_conversation(self, participant_ids: Sequence[str], is_group: bool = False) -> Conversation:
        payload = await self._request(
            "POST",
            "/conversations",
            json_body={"participantIds": list(participant_ids), "isGroup": is_group},
        )
        conversation = payload.get("conversation")
        if not isinstance(conversation, dict) or "id" not in conversation:
            raise ApiError(502, "missing conversation in response", method="POST", path="/conversations")
        return Conversation.from_api(conversation)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    async def clear_conversation(self, conversation_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/clear")

    async def mark_conversation_read(self, conversation_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/read")

    async def list_messages(
        self,
        conversation_id: str,
        *,
        cursor: str | None = None,
        direction: str = DIRECTION_OLDER,
        limit: int = 50,
    ) -> List[Message]:
        if direction not in {DIRECTION_OLDER, DIRECTION_NEWER}:
            raise ValueError(f"unsupported direction: {direction}")
        params = {"direction": direction, "limit": str(limit)}
        if cursor:
            params["cursor"] = cursor
        payload = await self._request("GET", f"/conversations/{conversation_id}/messages", params=params)
        return [Message.from_api(m) for m in payload.get("messages") or [] if isinstance(m, dict)]

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        attachments: Sequence[Attachment] = (),
        reply_to_id: str | None = None,
        gif: Gif | None = None,
    ) -> Dict[str, Any]:
        form = aiohttp.FormData()
        if content:
            form.add_field("content", content)
        for attachment in attachments:
            if not attachment.path:
                continue
            form.add_field(
                "attachments",
                Path(attachment.path).read_bytes(),
                filename=attachment.name,
                content_type=attachment.mime_type or "application/octet-stream",
            )
        if reply_to_id:
            form.add_field("replyToMessageId", reply_to_id)
        if gif is not None:
            form.add_field("gif", gif.to_json())
        return await self._request("POST", f"/conversations/{conversation_id}/messages", data=form)

    async def get_message_row(self, message_id: str) -> Dict[str, Any]:
        payload = await self._request("GET", f"/messages/{message_id}")
        row = payload.get("message")
        if not isinstance(row, dict) or "id" not in row:
            raise ApiError(404, "message not found", method="GET", path=f"/messages/{message_id}")
        return row

    async def mark_message_read(self, message_id: str) -> None:
        await self._request("POST", f"/messages/{message_id}/read")

    async def toggle_reaction(self, message_id: str, reaction: str) -> Dict[str, Any]:
        return await self._request("POST", f"/messages/{message_id}/reactions", json_body={"reaction": reaction})

    async def edit_message(self, message_id: str, content: str) -> str:
        payload = await self._request("PUT", f"/messages/{message_id}", json_body={"content": content})
        data = payload.get("data")
        if isinstance(data, dict) and isinstance(data.get("body"), str):
            return data["body"]
        return content

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}")

    async def search_contacts(self, search: str = "", *, limit: int = 50) -> List[Contact]:
        params = {"limit": str(limit)}
        if search.strip():
            params["search"] = search.strip()
        payload = await self._request("GET", "/contacts", params=params)
        return [Contact.from_api(c) for c in payload.get("contacts") or [] if isinstance(c, dict) and "id" in c]

    async def start_contact_conversation(self, user_id: str) -> str:
        """Open (or reuse) the 1:1 conversation with a contact and return its id."""

        payload = await self._request("POST", "/contacts", json_body={"userId": user_id})
        conversation = payload.get("conversation")
        if not isinstance(conversation, dict) or "id" not in conversation:
            raise ApiError(502, "missing conversation in response", method="POST", path="/contacts")
        return str(conversation["id"])

    async def search_gifs(self, query: str) -> List[Gif]:
        payload = await self._request("GET", "/gifs/search", params={"q": query})
        return [Gif.from_api(g) for g in payload.get("gifs") or [] if isinstance(g, dict)]

    async def trending_gifs(self) -> List[Gif]:
        payload = await self._request("GET", "/gifs/trending")
        return [Gif.from_api(g) for g in payload.get("gifs") or [] if isinstance(g, dict)]

    async def list_pinned_messages(self, conversation_id: str) -> List[PinnedMessage]:
        payload = await self._request("GET", "/pinned-messages", params={"conversationId": conversation_id})
        return [
            PinnedMessage.from_api(p) for p in payload.get("pinnedMessages") or [] if isinstance(p, dict) and "id" in p
        ]

    async def pin_message(self, conversation_id: str, message_id: str) -> PinnedMessage:
        payload = await self._request(
            "POST",
            "/pinned-messages",
            json_body={"conversationId": conversation_id, "messageId": message_id},
        )
        pinned = payload.get("pinnedMessage")
        if not isinstance(pinned, dict) or "id" not in pinned:
            raise ApiError(502, "missing pinned message in response", method="POST", path="/pinned-messages")
        return PinnedMessage.from_api(pinned)

    async def unpin_message(self, pinned_id: str) -> None:
        await self._request("DELETE", "/pinned-messages", params={"id": pinned_id})

    async def get_conversation_settings(self, conversation_id: str) -> ConversationSettings:
        payload = await self._request("GET", f"/conversations/{conversation_id}/settings")
        settings = payload.get("settings")
        return ConversationSettings.from_api(settings) if isinstance(settings, dict) else ConversationSettings()

    async def update_conversation_settings(
        self, conversation_id: str, settings: ConversationSettings
    ) -> ConversationSettings:
        payload = await self._request("PUT", f"/conversations/{conversation_id}/settings", json_body=settings.to_api())
        stored = payload.get("settings")
        return ConversationSettings.from_api(stored) if isinstance(stored, dict) else settings
