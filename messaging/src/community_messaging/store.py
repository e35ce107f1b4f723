from __future__ import annotations

from typing import Iterable, List, Optional

from .models import Message, ReadReceipt


class MessageStore:
    """Message list for the open conversation, deduplicated by message id.

    Order is insertion order; ``sorted_messages`` gives a timestamp-ordered
    view without reordering the store itself.
    """

    def __init__(self, conversation_id: str | None = None) -> None:
        self.conversation_id = conversation_id
        self._messages: List[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return any(m.id == message_id for m in self._messages)

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def ids(self) -> List[str]:
        return [m.id for m in self._messages]

    def sorted_messages(self) -> List[Message]:
        return sorted(self._messages, key=lambda m: m.sort_key)

    def reset(self, conversation_id: str | None) -> None:
        self.conversation_id = conversation_id
        self._messages = []

    @staticmethod
    def _unique(messages: Iterable[Message], seen: set) -> List[Message]:
        unique: List[Message] = []
        for message in messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            unique.append(message)
        return unique

    def insert(self, message: Message) -> bool:
        """Append ``message`` unless an entry with the same id exists."""

        if message.id in self:
            return False
        self._messages.append(message)
        return True

    def replace_all(self, messages: Iterable[Message]) -> None:
        self._messages = self._unique(messages, set())

    def replace_confirmed(self, messages: Iterable[Message]) -> None:
        """Replace confirmed entries while keeping still-pending optimistic ones."""

        fresh = self._unique(messages, set())
        seen = {m.id for m in fresh}
        pending = [m for m in self._messages if m.is_optimistic and m.id not in seen]
        self.replace_all(fresh + pending)

    def extend_older(self, messages: Iterable[Message]) -> int:
        added = self._unique(messages, set(self.ids()))
        self._messages.extend(added)
        return len(added)

    def prepend_newer(self, messages: Iterable[Message]) -> int:
        added = self._unique(messages, set(self.ids()))
        self._messages[:0] = added
        return len(added)

    def remove(self, message_id: str) -> bool:
        before = len(self._messages)
        self._messages = [m for m in self._messages if m.id != message_id]
        return len(self._messages) != before

    def patch_content(self, message_id: str, content: str) -> bool:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                self._messages[index] = message.edited(content)
                return True
        return False

    def mark_read(self, message_id: str) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        message.is_read = True
        return True

    def add_read_receipt(self, message_id: str, receipt: ReadReceipt, *, mark_read: bool = False) -> bool:
        message = self.get(message_id)
        if message is None:
            return False
        if all(r.user_id != receipt.user_id for r in message.read_by):
            message.read_by.append(receipt)
        if mark_read:
            message.is_read = True
        return True
