"""Client-side vetting of user-selected attachment files."""

from __future__ import annotations

import mimetypes
import secrets
from pathlib import Path
from typing import Iterable, List, Tuple

from .api_client import MessagingError
from .models import Attachment

MAX_FILE_SIZE = 10 * 1024 * 1024

KIND_FILE = "file"
KIND_MEDIA = "media"

MEDIA_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "video/mp4",
        "video/webm",
        "video/ogg",
    }
)

FILE_TYPES = MEDIA_TYPES | frozenset(
    {
        "audio/wav",
        "audio/mp3",
        "audio/ogg",
        "audio/webm",
        "application/pdf",
        "text/plain",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)

_ALLOWED = {KIND_FILE: FILE_TYPES, KIND_MEDIA: MEDIA_TYPES}


class AttachmentRejected(MessagingError):
    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__("Some files were rejected:\n" + "\n".join(self.reasons))


def guess_mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed == "audio/mpeg":
        return "audio/mp3"
    if guessed == "audio/x-wav":
        return "audio/wav"
    return guessed or "application/octet-stream"


def validate_files(paths: Iterable[str | Path], kind: str = KIND_FILE) -> Tuple[List[Attachment], List[str]]:
    """Split selected files into accepted attachments and rejection reasons.

    Nothing touches the network here; rejected files never reach the send
    pipeline.
    """

    if kind not in _ALLOWED:
        raise ValueError(f"unknown attachment kind: {kind}")
    allowed = _ALLOWED[kind]
    accepted: List[Attachment] = []
    rejected: List[str] = []
    for raw in paths:
        path = Path(raw).expanduser()
        try:
            size = path.stat().st_size
        except OSError:
            rejected.append(f"{path.name}: File not found")
            continue
        mime_type = guess_mime_type(path)
        if size > MAX_FILE_SIZE:
            rejected.append(f"{path.name}: File size exceeds 10MB")
        elif mime_type not in allowed:
            rejected.append(f"{path.name}: File type not supported")
        else:
            accepted.append(
                Attachment(
                    id=secrets.token_hex(5),
                    name=path.name,
                    mime_type=mime_type,
                    size=size,
                    path=str(path),
                )
            )
    return accepted, rejected


def require_valid_files(paths: Iterable[str | Path], kind: str = KIND_FILE) -> List[Attachment]:
    accepted, rejected = validate_files(paths, kind)
    if rejected:
        raise AttachmentRejected(rejected)
    return accepted
