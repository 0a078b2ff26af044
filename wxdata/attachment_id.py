"""Opaque attachment identifiers passed between the CLI and the daemon.

The encoding is base64url without padding over a compact JSON payload.
``local_id`` is reused within a chat, so ``(chat, local_id, create_time)``
is the smallest key that locates a resource row.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional

_CURRENT_VERSION = 1


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    VOICE = "voice"

    @classmethod
    def from_local_type(cls, local_type: int) -> Optional["AttachmentKind"]:
        """Map a message local_type to an attachment kind, ignoring the high 32 flag bits."""
        lo = local_type & 0xFFFF_FFFF
        return _LOCAL_TYPES.get(lo)


_LOCAL_TYPES = {
    3: AttachmentKind.IMAGE,
    34: AttachmentKind.VOICE,
    43: AttachmentKind.VIDEO,
    # appmsg; whether it is really a file is decided by the resolver
    49: AttachmentKind.FILE,
}


def _require_int(payload: dict, name: str, low: int, high: int) -> int:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"attachment_id field {name!r} must be an integer")
    if not low <= value <= high:
        raise ValueError(f"attachment_id field {name!r} out of range: {value}")
    return value


@dataclass
class AttachmentId:
    """Payload identifying one attachment message."""

    v: int
    chat: str
    local_id: int
    create_time: int
    kind: AttachmentKind
    db: Optional[int] = None

    def encode(self) -> str:
        payload = {
            "v": self.v,
            "chat": self.chat,
            "local_id": self.local_id,
            "create_time": self.create_time,
            "kind": AttachmentKind(self.kind).value,
        }
        if self.db is not None:
            payload["db"] = self.db
        raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, s: str) -> "AttachmentId":
        text = s.strip()
        if "=" in text:
            raise ValueError("attachment_id is not valid base64url: padding not allowed")
        try:
            raw = base64.b64decode(text + "=" * (-len(text) % 4), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"attachment_id is not valid base64url: {exc}") from exc
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValueError("attachment_id payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValueError("attachment_id payload is not valid JSON object")

        v = _require_int(payload, "v", 0, 0xFFFF_FFFF)
        chat = payload.get("chat")
        if not isinstance(chat, str):
            raise ValueError("attachment_id field 'chat' must be a string")
        local_id = _require_int(payload, "local_id", -(1 << 63), (1 << 63) - 1)
        create_time = _require_int(payload, "create_time", -(1 << 63), (1 << 63) - 1)
        try:
            kind = AttachmentKind(payload.get("kind"))
        except ValueError as exc:
            raise ValueError(f"attachment_id has unknown kind {payload.get('kind')!r}") from exc
        db = payload.get("db")
        if db is not None:
            db = _require_int(payload, "db", 0, 255)

        if v != _CURRENT_VERSION:
            raise ValueError(f"unsupported attachment_id version v={v}")
        return cls(v=v, chat=chat, local_id=local_id, create_time=create_time, kind=kind, db=db)