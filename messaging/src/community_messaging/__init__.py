"""Client-side messaging orchestration for the community platform."""

from .api_client import ApiError, MessagingApi, MessagingError
from .attachments import AttachmentRejected, validate_files
from .config import MessagingConfig, load_config_from_env
from .models import (
    Attachment,
    Contact,
    Conversation,
    ConversationSettings,
    Gif,
    Message,
    PinnedMessage,
    ReplyTo,
    TypingIndicator,
)
from .realtime import LocalRealtime, RealtimeClient
from .session import Identity, MessagingSession, ReconcilePolicy, SendFailed

__all__ = [
    "ApiError",
    "MessagingApi",
    "MessagingError",
    "AttachmentRejected",
    "validate_files",
    "MessagingConfig",
    "load_config_from_env",
    "Attachment",
    "Contact",
    "Conversation",
    "ConversationSettings",
    "Gif",
    "Message",
    "PinnedMessage",
    "ReplyTo",
    "TypingIndicator",
    "LocalRealtime",
    "RealtimeClient",
    "Identity",
    "MessagingSession",
    "ReconcilePolicy",
    "SendFailed",
]
