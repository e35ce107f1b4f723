"""In-memory community API served by aiohttp for client tests."""

import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer


class FakeCommunity:
    def __init__(self) -> None:
        self.users: Dict[str, str] = {}
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.reactions: List[Dict[str, Any]] = []
        self.reads: List[Dict[str, Any]] = []
        self.requests: List[Tuple[str, str]] = []
        self.uploads: List[Dict[str, Any]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, str]] = {}
        self.current_user = ""
        self.on_send: Optional[Callable[[str], Awaitable[None]]] = None
        self.gates: Dict[Tuple[str, str], Tuple[asyncio.Event, asyncio.Event]] = {}
        self.admins: set = set()
        self.pins: List[Dict[str, Any]] = []
        self.settings: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.gifs: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _timestamp(self) -> str:
        tick = next(self._clock)
        return f"2024-01-01T00:{tick // 60:02d}:{tick % 60:02d}Z"

    def add_user(self, user_id: str, name: str, *, admin: bool = False) -> None:
        self.users[user_id] = name
        if admin:
            self.admins.add(user_id)

    def add_gif(self, gif_id: str, title: str) -> Dict[str, Any]:
        gif = {
            "id": gif_id,
            "title": title,
            "url": f"https://gifs.example/{gif_id}.gif",
            "preview": "",
            "width": 200,
            "height": 100,
        }
        self.gifs.append(gif)
        return gif

    def shared_conversation(self, user_id: str) -> Optional[str]:
        for conversation in self.conversations.values():
            if self.current_user in conversation["participants"] and user_id in conversation["participants"]:
                return conversation["id"]
        return None

    def add_conversation(self, participant_ids: List[str], *, is_group: bool = False, conversation_id: str | None = None) -> str:
        conversation_id = conversation_id or self._next_id("conv")
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "participants": list(participant_ids),
            "isGroup": is_group,
            "createdAt": self._timestamp(),
        }
        return conversation_id

    def add_message(self, conversation_id: str, sender_id: str, body: str, **extra: Any) -> str:
        message_id = self._next_id("msg")
        self.messages[message_id] = {
            "id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "body": body,
            "created_at": self._timestamp(),
            "metadata": extra.pop("metadata", {}),
            "reply_to_id": extra.pop("reply_to_id", None),
            "attachments": extra.pop("attachments", []),
        }
        return message_id

    def fail(self, method: str, route: str, status: int = 500, error: str = "boom") -> None:
        self.failures[(method, route)] = (status, error)

    def hold(self, method: str, route: str) -> Tuple[asyncio.Event, asyncio.Event]:
        """Make the next matching request wait; returns (entered, release)."""

        gate = (asyncio.Event(), asyncio.Event())
        self.gates[(method, route)] = gate
        return gate

    async def pass_gate(self, method: str, route: str) -> None:
        gate = self.gates.pop((method, route), None)
        if gate is not None:
            entered, release = gate
            entered.set()
            await release.wait()

    def reaction_users(self, message_id: str) -> List[Dict[str, Any]]:
        return [r for r in self.reactions if r["message_id"] == message_id]

    def _conversation_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        rows = [m for m in self.messages.values() if m["conversation_id"] == conversation_id]
        return sorted(rows, key=lambda m: m["created_at"])

    def _grouped_reactions(self, message_id: str) -> List[Dict[str, Any]]:
        groups: Dict[str, Dict[str, Any]] = {}
        for row in self.reaction_users(message_id):
            group = groups.setdefault(row["reaction"], {"emoji": row["reaction"], "count": 0, "users": []})
            group["count"] += 1
            group["users"].append(self.users.get(row["user_id"], "Unknown"))
        return list(groups.values())

    def _read_rows(self, message_id: str) -> List[Dict[str, Any]]:
        return [r for r in self.reads if r["message_id"] == message_id]

    def message_payload(self, row: Dict[str, Any]) -> Dict[str, Any]:
        reply = self.messages.get(row["reply_to_id"] or "")
        reads = self._read_rows(row["id"])
        return {
            "id": row["id"],
            "content": row["body"],
            "senderId": row["sender_id"],
            "senderName": self.users.get(row["sender_id"], ""),
            "timestamp": row["created_at"],
            "attachments": [dict(a) for a in row["attachments"]],
            "gif": row["metadata"].get("gif"),
            "reactions": self._grouped_reactions(row["id"]),
            "replyTo": (
                {"id": reply["id"], "content": reply["body"], "senderName": self.users.get(reply["sender_id"], "")}
                if reply
                else None
            ),
            "isRead": any(r["user_id"] == self.current_user for r in reads),
            "readBy": [
                {"userId": r["user_id"], "userName": self.users.get(r["user_id"], "Unknown"), "readAt": r["read_at"]}
                for r in reads
            ],
            "isEdited": bool(row["metadata"].get("isEdited")),
        }

    def message_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        reply = self.messages.get(row["reply_to_id"] or "")
        return {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "sender_id": row["sender_id"],
            "body": row["body"],
            "created_at": row["created_at"],
            "metadata": dict(row["metadata"]),
            "users": {"name": self.users.get(row["sender_id"], "")},
            "message_attachments": [
                {
                    "id": a["id"],
                    "file_name": a["name"],
                    "mime_type": a["type"],
                    "size_bytes": a["size"],
                    "storage_path": a["storage_path"],
                }
                for a in row["attachments"]
            ],
            "message_reactions": [
                {"reaction": r["reaction"], "users": {"name": self.users.get(r["user_id"], "")}}
                for r in self.reaction_users(row["id"])
            ],
            "reply_to_message": (
                {"id": reply["id"], "body": reply["body"], "users": {"name": self.users.get(reply["sender_id"], "")}}
                if reply
                else None
            ),
            "message_reads": [
                {"user_id": r["user_id"], "read_at": r["read_at"], "users": {"name": self.users.get(r["user_id"], "")}}
                for r in self._read_rows(row["id"])
            ],
        }

    def conversation_payload(self, conversation: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._conversation_messages(conversation["id"])
        last = rows[-1] if rows else None
        unread = sum(
            1
            for m in rows
            if m["sender_id"] != self.current_user
            and not any(r["user_id"] == self.current_user for r in self._read_rows(m["id"]))
        )
        return {
            "id": conversation["id"],
            "participants": [{"id": uid, "name": self.users.get(uid, "")} for uid in conversation["participants"]],
            "lastMessage": (
                {"content": last["body"], "timestamp": last["created_at"], "senderId": last["sender_id"]} if last else None
            ),
            "unreadCount": unread,
            "createdAt": conversation["createdAt"],
            "updatedAt": last["created_at"] if last else conversation["createdAt"],
            "isGroup": conversation["isGroup"],
        }


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def create_fake_app(state: FakeCommunity) -> web.Application:
    routes = web.RouteTableDef()

    def check(method: str, route: str) -> Optional[web.Response]:
        state.requests.append((method, route))
        failure = state.failures.pop((method, route), None)
        if failure is not None:
            return _error(*failure)
        return None

    @routes.get("/conversations")
    async def list_conversations(request: web.Request) -> web.Response:
        if (failed := check("GET", "conversations")) is not None:
            return failed
        visible = [c for c in state.conversations.values() if state.current_user in c["participants"]]
        return web.json_response({"conversations": [state.conversation_payload(c) for c in visible]})

    @routes.post("/conversations")
    async def create_conversation(request: web.Request) -> web.Response:
        if (failed := check("POST", "conversations")) is not None:
            return failed
        body = await request.json()
        participants = [state.current_user] + [p for p in body.get("participantIds", []) if p != state.current_user]
        conversation_id = state.add_conversation(participants, is_group=bool(body.get("isGroup")))
        return web.json_response({"conversation": state.conversation_payload(state.conversations[conversation_id])})

    @routes.delete("/conversations/{conversation_id}")
    async def delete_conversation(request: web.Request) -> web.Response:
        if (failed := check("DELETE", "conversation")) is not None:
            return failed
        conversation_id = request.match_info["conversation_id"]
        if state.conversations.pop(conversation_id, None) is None:
            return _error(404, "Conversation not found")
        return web.json_response({"success": True})

    @routes.post("/conversations/{conversation_id}/clear")
    async def clear_conversation(request: web.Request) -> web.Response:
        if (failed := check("POST", "clear")) is not None:
            return failed
        conversation_id = request.match_info["conversation_id"]
        for message_id in [m["id"] for m in state._conversation_messages(conversation_id)]:
            del state.messages[message_id]
        return web.json_response({"success": True})

    @routes.post("/conversations/{conversation_id}/read")
    async def mark_conversation_read(request: web.Request) -> web.Response:
        if (failed := check("POST", "read-all")) is not None:
            return failed
        conversation_id = request.match_info["conversation_id"]
        for row in state._conversation_messages(conversation_id):
            if not any(r["user_id"] == state.current_user for r in state._read_rows(row["id"])):
                state.reads.append({"message_id": row["id"], "user_id": state.current_user, "read_at": state._timestamp()})
        return web.json_response({"success": True})

    @routes.get("/conversations/{conversation_id}/messages")
    async def list_messages(request: web.Request) -> web.Response:
        if (failed := check("GET", "messages")) is not None:
            return failed
        await state.pass_gate("GET", "messages")
        rows = state._conversation_messages(request.match_info["conversation_id"])
        limit = int(request.query.get("limit", "50"))
        cursor = request.query.get("cursor")
        direction = request.query.get("direction", "older")
        if cursor:
            ids = [r["id"] for r in rows]
            index = ids.index(cursor) if cursor in ids else len(ids)
            rows = rows[:index][-limit:] if direction == "older" else rows[index + 1 :][:limit]
        else:
            rows = rows[-limit:]
        return web.json_response({"messages": [state.message_payload(r) for r in rows]})

    @routes.post("/conversations/{conversation_id}/messages")
    async def send_message(request: web.Request) -> web.Response:
        if (failed := check("POST", "send")) is not None:
            return failed
        conversation_id = request.match_info["conversation_id"]
        form = await request.post()
        attachments = []
        for field in form.getall("attachments", []):
            payload = field.file.read()
            attachment_id = state._next_id("att")
            state.uploads.append({"name": field.filename, "type": field.content_type, "size": len(payload)})
            attachments.append(
                {
                    "id": attachment_id,
                    "name": field.filename,
                    "type": field.content_type,
                    "size": len(payload),
                    "url": f"https://files.example/{attachment_id}",
                    "storage_path": f"{conversation_id}/{attachment_id}",
                }
            )
        metadata: Dict[str, Any] = {}
        if "gif" in form:
            metadata["gif"] = json.loads(form["gif"])
        content = str(form.get("content", ""))
        if not content.strip() and not attachments and "gif" not in metadata:
            return _error(400, "Message content or attachments required")
        message_id = state.add_message(
            conversation_id,
            state.current_user,
            content,
            metadata=metadata,
            reply_to_id=form.get("replyToMessageId"),
            attachments=attachments,
        )
        if state.on_send is not None:
            await state.on_send(message_id)
        return web.json_response({"message": state.message_payload(state.messages[message_id])})

    @routes.get("/messages/{message_id}")
    async def get_message(request: web.Request) -> web.Response:
        if (failed := check("GET", "message")) is not None:
            return failed
        row = state.messages.get(request.match_info["message_id"])
        if row is None:
            return _error(404, "Message not found")
        return web.json_response({"message": state.message_row(row)})

    @routes.put("/messages/{message_id}")
    async def edit_message(request: web.Request) -> web.Response:
        if (failed := check("PUT", "message")) is not None:
            return failed
        row = state.messages.get(request.match_info["message_id"])
        if row is None:
            return _error(404, "Message not found")
        body = await request.json()
        row["body"] = body["content"]
        row["metadata"]["isEdited"] = True
        return web.json_response({"data": {"id": row["id"], "body": row["body"]}})

    @routes.delete("/messages/{message_id}")
    async def delete_message(request: web.Request) -> web.Response:
        if (failed := check("DELETE", "message")) is not None:
            return failed
        if state.messages.pop(request.match_info["message_id"], None) is None:
            return _error(404, "Message not found")
        return web.json_response({"success": True})

    @routes.post("/messages/{message_id}/read")
    async def mark_read(request: web.Request) -> web.Response:
        if (failed := check("POST", "read")) is not None:
            return failed
        message_id = request.match_info["message_id"]
        if not any(r["user_id"] == state.current_user for r in state._read_rows(message_id)):
            state.reads.append({"message_id": message_id, "user_id": state.current_user, "read_at": state._timestamp()})
        return web.json_response({"success": True})

    @routes.post("/messages/{message_id}/reactions")
    async def toggle_reaction(request: web.Request) -> web.Response:
        if (failed := check("POST", "reactions")) is not None:
            return failed
        message_id = request.match_info["message_id"]
        reaction = (await request.json())["reaction"]
        existing = [
            r
            for r in state.reactions
            if r["message_id"] == message_id and r["user_id"] == state.current_user and r["reaction"] == reaction
        ]
        if existing:
            state.reactions.remove(existing[0])
            return web.json_response({"action": "removed"})
        state.reactions.append({"message_id": message_id, "user_id": state.current_user, "reaction": reaction})
        return web.json_response({"action": "added"})

    @routes.get("/contacts")
    async def list_contacts(request: web.Request) -> web.Response:
        if (failed := check("GET", "contacts")) is not None:
            return failed
        search = request.query.get("search", "").lower()
        limit = int(request.query.get("limit", "50"))
        contacts = []
        for user_id, name in sorted(state.users.items(), key=lambda item: item[1]):
            if user_id == state.current_user or user_id in state.admins or search not in name.lower():
                continue
            conversation_id = state.shared_conversation(user_id)
            contacts.append(
                {
                    "id": user_id,
                    "name": name,
                    "email": f"{user_id}@community.example",
                    "has_conversation": conversation_id is not None,
                    "conversation_id": conversation_id,
                }
            )
        return web.json_response({"contacts": contacts[:limit]})

    @routes.post("/contacts")
    async def start_contact_conversation(request: web.Request) -> web.Response:
        if (failed := check("POST", "contacts")) is not None:
            return failed
        user_id = (await request.json()).get("userId")
        if user_id not in state.users:
            return _error(404, "Target user not found")
        if user_id in state.admins:
            return _error(403, "Cannot message administrators")
        existing = state.shared_conversation(user_id)
        if existing is not None:
            return web.json_response({"conversation": {"id": existing}})
        conversation_id = state.add_conversation([state.current_user, user_id])
        return web.json_response({"conversation": {"id": conversation_id}}, status=201)

    @routes.get("/gifs/search")
    async def search_gifs(request: web.Request) -> web.Response:
        if (failed := check("GET", "gifs")) is not None:
            return failed
        query = request.query.get("q", "").strip().lower()
        if not query:
            return _error(400, "Search query is required")
        return web.json_response({"gifs": [g for g in state.gifs if query in g["title"].lower()]})

    @routes.get("/gifs/trending")
    async def trending_gifs(request: web.Request) -> web.Response:
        if (failed := check("GET", "trending")) is not None:
            return failed
        return web.json_response({"gifs": state.gifs})

    @routes.get("/pinned-messages")
    async def list_pins(request: web.Request) -> web.Response:
        if (failed := check("GET", "pins")) is not None:
            return failed
        conversation_id = request.query.get("conversationId")
        if not conversation_id:
            return _error(400, "Conversation ID required")
        pins = [p for p in reversed(state.pins) if p["conversation_id"] == conversation_id]
        payload = []
        for pin in pins:
            message = state.messages.get(pin["message_id"], {})
            payload.append(
                dict(
                    pin,
                    messages={
                        "id": pin["message_id"],
                        "body": message.get("body", ""),
                        "users": {"name": state.users.get(message.get("sender_id", ""), "")},
                    },
                )
            )
        return web.json_response({"pinnedMessages": payload})

    @routes.post("/pinned-messages")
    async def pin_message(request: web.Request) -> web.Response:
        if (failed := check("POST", "pins")) is not None:
            return failed
        body = await request.json()
        message = state.messages.get(body.get("messageId") or "")
        if message is None or message["conversation_id"] != body.get("conversationId"):
            return _error(404, "Message not found")
        pin = {
            "id": state._next_id("pin"),
            "conversation_id": message["conversation_id"],
            "message_id": message["id"],
            "pinned_by": state.current_user,
            "pinned_at": state._timestamp(),
        }
        state.pins.append(pin)
        return web.json_response({"pinnedMessage": pin})

    @routes.delete("/pinned-messages")
    async def unpin_message(request: web.Request) -> web.Response:
        if (failed := check("DELETE", "pins")) is not None:
            return failed
        pin_id = request.query.get("id")
        if not pin_id:
            return _error(400, "Pinned message ID required")
        state.pins = [p for p in state.pins if not (p["id"] == pin_id and p["pinned_by"] == state.current_user)]
        return web.json_response({"success": True})

    @routes.get("/conversations/{conversation_id}/settings")
    async def get_settings(request: web.Request) -> web.Response:
        if (failed := check("GET", "settings")) is not None:
            return failed
        key = (request.match_info["conversation_id"], state.current_user)
        stored = state.settings.get(key)
        return web.json_response(
            {"settings": stored or {"customTitle": None, "isMuted": False, "muteUntil": None}}
        )

    @routes.put("/conversations/{conversation_id}/settings")
    async def update_settings(request: web.Request) -> web.Response:
        if (failed := check("PUT", "settings")) is not None:
            return failed
        body = await request.json()
        conversation_id = request.match_info["conversation_id"]
        row = {
            "conversation_id": conversation_id,
            "user_id": state.current_user,
            "custom_title": body.get("customTitle") or None,
            "is_muted": bool(body.get("isMuted")),
            "mute_until": body.get("muteUntil") or None,
        }
        state.settings[(conversation_id, state.current_user)] = row
        return web.json_response({"settings": row})

    @routes.post("/object/sign/{bucket}/{path:.*}")
    async def sign(request: web.Request) -> web.Response:
        if (failed := check("POST", "sign")) is not None:
            return failed
        body = await request.json()
        path = request.match_info["path"]
        return web.json_response(
            {"signedURL": f"/object/sign/{request.match_info['bucket']}/{path}?token=t&ttl={body['expiresIn']}"}
        )

    app = web.Application()
    app.add_routes(routes)
    return app


async def start_fake_server(state: FakeCommunity) -> Tuple[TestServer, TestClient]:
    server = TestServer(create_fake_app(state))
    await server.start_server()
    client = TestClient(server)
    await client.start_server()
    return server, client
