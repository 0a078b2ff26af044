"""Translate an attachment id into a local ``.dat`` file.

1. chat username -> ``ChatName2Id.rowid`` in the resource database
2. ``(chat_id, local_id)`` -> ``MessageResourceInfo.packed_info``
3. extract the 32-character hex MD5 from ``packed_info``
4. look for ``<attach_root>/<md5(chat)>/<YYYY-MM>/Img/<md5>[_h|_t].dat``
"""

from __future__ import annotations

import hashlib
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .attachment_id import AttachmentId, AttachmentKind

_MARKER = bytes([0x12, 0x22, 0x0A, 0x20])
_HEX_RUN = re.compile(rb"[0-9A-Fa-f]{32}")
_HEX_CHARS = frozenset(b"0123456789abcdefABCDEF")
_MONTH_SECONDS = 31 * 86400

_LO32_TYPES = {
    AttachmentKind.IMAGE: 3,
    AttachmentKind.VOICE: 34,
    AttachmentKind.VIDEO: 43,
    AttachmentKind.FILE: 49,
}


class AttachmentNotFound(LookupError):
    """The resource row or the local .dat file of an attachment is missing."""


@dataclass(frozen=True)
class AttachmentMetadata:
    md5: str


@dataclass(frozen=True)
class ResolvedAttachment:
    id: AttachmentId
    md5: str
    dat_path: Path
    size: int


def _query_blob(conn: sqlite3.Connection, sql: str, params: tuple) -> Optional[bytes]:
    try:
        row = conn.execute(sql, params).fetchone()
    except sqlite3.Error:
        return None
    if row is None or not isinstance(row[0], bytes):
        return None
    return row[0]


def lookup_md5(
    resource_db_path,
    chat: str,
    local_id: int,
    create_time: int,
    msg_local_type_lo32: int,
) -> Optional[AttachmentMetadata]:
    """Look up the resource MD5 of a message in message_resource.db."""
    uri = Path(resource_db_path).resolve().as_uri() + "?mode=ro"
    try:
        conn = sqlite3.connect(uri, uri=True)
    except sqlite3.Error as exc:
        raise OSError(f"cannot open message_resource.db {resource_db_path}: {exc}") from exc
    try:
        try:
            row = conn.execute(
                "SELECT rowid FROM ChatName2Id WHERE user_name = ?1", (chat,)
            ).fetchone()
        except sqlite3.Error:
            row = None
        if row is None:
            return None
        chat_id = row[0]

        # local_id is reused within a chat: try the exact create_time first,
        # then fall back to the newest row with the same local_id and type.
        blob = _query_blob(
            conn,
            """SELECT packed_info FROM MessageResourceInfo
               WHERE chat_id = ?1
                 AND message_local_id = ?2
                 AND (message_local_type = ?3 OR message_local_type % 4294967296 = ?3)
                 AND message_create_time = ?4
               ORDER BY rowid DESC
               LIMIT 1""",
            (chat_id, local_id, msg_local_type_lo32, create_time),
        )
        if blob is None:
            blob = _query_blob(
                conn,
                """SELECT packed_info FROM MessageResourceInfo
                   WHERE chat_id = ?1
                     AND message_local_id = ?2
                     AND (message_local_type = ?3 OR message_local_type % 4294967296 = ?3)
                   ORDER BY message_create_time DESC
                   LIMIT 1""",
                (chat_id, local_id, msg_local_type_lo32),
            )
    finally:
        conn.close()

    if blob is None:
        return None
    md5 = extract_md5_from_packed_info(blob)
    return AttachmentMetadata(md5=md5) if md5 is not None else None


def extract_md5_from_packed_info(blob: bytes) -> Optional[str]:
    """Pull a 32-character hex MD5 out of a packed_info protobuf blob."""
    blob = bytes(blob)
    pos = blob.find(_MARKER)
    if pos >= 0:
        start = pos + len(_MARKER)
        chunk = blob[start:start + 32]
        if len(chunk) == 32 and all(b in _HEX_CHARS for b in chunk):
            return chunk.decode("ascii").lower()
    match = _HEX_RUN.search(blob)
    if match is not None:
        return match.group(0).decode("ascii").lower()
    return None


def find_dat_file(attach_root, chat: str, file_md5: str, create_time: int) -> Optional[Path]:
    """Find the best .dat for `file_md5`, trying months near `create_time` first."""
    chat_hash = hashlib.md5(chat.encode("utf-8")).hexdigest()
    chat_dir = Path(attach_root) / chat_hash
    if not chat_dir.is_dir():
        return None

    for ym in three_month_candidates(create_time):
        found = pick_best_in_img_dir(chat_dir / ym / "Img", file_md5)
        if found is not None:
            return found

    try:
        months = sorted(p for p in chat_dir.iterdir() if p.is_dir())
    except OSError:
        return None
    for month_dir in months:
        found = pick_best_in_img_dir(month_dir / "Img", file_md5)
        if found is not None:
            return found
    return None


def pick_best_in_img_dir(img_dir, file_md5: str) -> Optional[Path]:
    """Prefer the full image, then the HD thumbnail (_h), then the thumbnail (_t)."""
    img_dir = Path(img_dir)
    if not img_dir.is_dir():
        return None
    for suffix in ("", "_h", "_t"):
        candidate = img_dir / f"{file_md5}{suffix}.dat"
        if candidate.is_file():
            return candidate
    return None


def three_month_candidates(unix_ts: int) -> list[str]:
    """``YYYY-MM`` of the month before, of, and after the timestamp, in local time."""
    try:
        stamps = [
            datetime.fromtimestamp(unix_ts + delta)
            for delta in (-_MONTH_SECONDS, 0, _MONTH_SECONDS)
        ]
    except (OverflowError, OSError, ValueError):
        return []
    return [f"{d.year:04d}-{d.month:02d}" for d in stamps]


def attach_root_for(wxchat_base) -> Path:
    return Path(wxchat_base) / "msg" / "attach"


def resolve(attachment_id: AttachmentId, resource_db_path, attach_root) -> ResolvedAttachment:
    """Find the resource MD5 and the local .dat file of an attachment."""
    lo32_type = _LO32_TYPES[AttachmentKind(attachment_id.kind)]
    meta = lookup_md5(
        resource_db_path,
        attachment_id.chat,
        attachment_id.local_id,
        attachment_id.create_time,
        lo32_type,
    )
    if meta is None:
        raise AttachmentNotFound(
            f"no resource row in message_resource.db for chat={attachment_id.chat} "
            f"local_id={attachment_id.local_id} type={lo32_type} "
            "(not an attachment message, or the resource database is not in sync)"
        )
    dat_path = find_dat_file(attach_root, attachment_id.chat, meta.md5, attachment_id.create_time)
    if dat_path is None:
        raise AttachmentNotFound(
            f"no local .dat (md5={meta.md5} chat={attachment_id.chat} "
            f"create_time={attachment_id.create_time}); the attachment may not be "
            "downloaded yet or was cleaned up"
        )
    try:
        size = dat_path.stat().st_size
    except OSError:
        size = 0
    return ResolvedAttachment(id=attachment_id, md5=meta.md5, dat_path=dat_path, size=size)