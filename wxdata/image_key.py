"""Image AES key material for V2 attachment files.

V2 ``.dat`` files need a 16-byte ASCII AES key and a single XOR byte.  This
module holds the platform-independent pieces: locating account directories,
collecting ciphertext templates from V2 files, voting on the XOR key and
checking candidate AES keys against those templates.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .decoder import V2_MAGIC, detect_image_format

_TEMPLATE_START = 0x0F
_TEMPLATE_END = 0x1F
_MIN_VOTE_FILE_SIZE = 0x20
_JPEG_TRAILER = 0xD9

_ALNUM_RUNS = {
    16: re.compile(rb"[A-Za-z0-9]{16}"),
    32: re.compile(rb"[A-Za-z0-9]{32}"),
}

# Windows page protection flags
_PAGE_NOACCESS = 0x01
_PAGE_READWRITE = 0x04
_PAGE_WRITECOPY = 0x08
_PAGE_EXECUTE_READWRITE = 0x40
_PAGE_EXECUTE_WRITECOPY = 0x80
_PAGE_GUARD = 0x100
_PAGE_NOCACHE = 0x200
_PAGE_WRITECOMBINE = 0x400
_WRITABLE_PAGES = frozenset(
    {_PAGE_READWRITE, _PAGE_WRITECOPY, _PAGE_EXECUTE_READWRITE, _PAGE_EXECUTE_WRITECOPY}
)


@dataclass(frozen=True)
class ImageKeyMaterial:
    """The 16-byte AES key and the XOR byte used by V2 image files."""

    aes_key: bytes
    xor_key: int

    def __post_init__(self) -> None:
        if len(self.aes_key) != 16:
            raise ValueError("AES key must be exactly 16 bytes")
        if not 0 <= self.xor_key <= 0xFF:
            raise ValueError("XOR key must fit in one byte")


class ImageKeyProvider(ABC):
    """Source of V2 image key material for an account (wxid)."""

    @abstractmethod
    def get_key(self, wxid: str) -> ImageKeyMaterial:
        """Return the key material for `wxid`."""

    def get_aes_key(self, wxid: str) -> bytes:
        return self.get_key(wxid).aes_key

    def get_xor_key(self, wxid: str) -> int:
        return self.get_key(wxid).xor_key


class LinuxImageKeyProvider(ImageKeyProvider):
    """Linux has no known way to obtain V2 image keys."""

    def get_key(self, wxid: str) -> ImageKeyMaterial:
        raise RuntimeError(
            "V2 image keys are unsupported on Linux; only legacy/V1 images can be decoded"
        )


def configured_db_dir_for_wxid(configured_db_dir, requested_wxid: str) -> Path:
    """The db_storage directory of `requested_wxid`, next to the configured one."""
    configured_db_dir = Path(configured_db_dir)
    if not requested_wxid.strip():
        return configured_db_dir

    leaf = wxid_from_db_dir(configured_db_dir)
    if leaf is not None and same_wxid(leaf, requested_wxid):
        return configured_db_dir

    root = xwechat_files_root(configured_db_dir)
    if root is None:
        return configured_db_dir
    return root / requested_wxid / "db_storage"


def wxid_from_db_dir(db_dir) -> Optional[str]:
    """The path component right after ``xwechat_files``, if any."""
    parts = iter(Path(db_dir).parts)
    for part in parts:
        if part == "xwechat_files":
            return next(parts, None)
    return None


def xwechat_files_root(db_dir) -> Optional[Path]:
    """The ``.../xwechat_files`` prefix of `db_dir`, if present."""
    parts = Path(db_dir).parts
    if "xwechat_files" not in parts:
        return None
    idx = parts.index("xwechat_files")
    return Path(*parts[: idx + 1])


def normalize_wxid(raw: str) -> str:
    """Strip the per-install suffix from a wxid directory name."""
    raw = raw.strip()
    if not raw:
        return ""
    if raw.startswith("wxid_"):
        head = raw[len("wxid_"):].split("_")[0]
        return f"wxid_{head}"
    if "_" in raw:
        base, suffix = raw.rsplit("_", 1)
        if len(suffix) == 4 and all(c in "0123456789abcdefABCDEF" for c in suffix):
            return base
    return raw


def same_wxid(a: str, b: str) -> bool:
    return a == b or normalize_wxid(a) == normalize_wxid(b)


def attach_root_for_db_dir(db_dir) -> Path:
    """``<account>/msg/attach`` for a ``<account>/db_storage`` directory."""
    db_dir = Path(db_dir)
    parent = db_dir.parent
    if parent == db_dir:
        return Path("msg") / "attach"
    return parent / "msg" / "attach"


def _walk_files(directory: Path) -> Iterator[Path]:
    """Files below `directory`, depth first, entries in sorted order."""
    for path in sorted(directory.iterdir()):
        if path.is_dir():
            yield from _walk_files(path)
        else:
            yield path


def _collect_templates_with_suffix(
    directory: Path, suffix: str, max_templates: int, max_files: int
) -> list[bytes]:
    out: list[bytes] = []
    seen: set[bytes] = set()
    examined = 0
    for path in _walk_files(directory):
        if not path.name.endswith(suffix):
            continue
        examined += 1
        data = path.read_bytes()
        if len(data) >= _TEMPLATE_END and data.startswith(V2_MAGIC):
            template = data[_TEMPLATE_START:_TEMPLATE_END]
            if template not in seen:
                seen.add(template)
                out.append(template)
                if len(out) >= max_templates:
                    break
        if examined >= max_files and out:
            break
    return out


def find_v2_template_ciphertexts(attach_dir, max_templates: int, max_files: int) -> list[bytes]:
    """First AES blocks of V2 files, preferring thumbnails (``_t.dat``)."""
    attach_dir = Path(attach_dir)
    if not attach_dir.is_dir():
        return []
    out = _collect_templates_with_suffix(attach_dir, "_t.dat", max_templates, max_files)
    if not out:
        out = _collect_templates_with_suffix(attach_dir, ".dat", max_templates, max_files)
    return out


def derive_xor_key_from_v2_dat(
    attach_dir, sample: int, min_samples: int
) -> Optional[tuple[int, int, int]]:
    """Vote on the XOR key from the last byte of V2 files (a JPEG ends in 0xD9).

    Returns ``(xor_key, top_votes, total_votes)`` or None with too few samples.
    """
    attach_dir = Path(attach_dir)
    if not attach_dir.is_dir():
        return None
    votes: list[int] = []
    for path in _walk_files(attach_dir):
        if not path.name.endswith(".dat"):
            continue
        if path.stat().st_size < _MIN_VOTE_FILE_SIZE:
            continue
        data = path.read_bytes()
        if data.startswith(V2_MAGIC):
            votes.append(data[-1] ^ _JPEG_TRAILER)
            if len(votes) >= sample:
                break

    if not votes or len(votes) < min_samples:
        return None

    counts = [0] * 256
    for vote in votes:
        counts[vote] += 1
    best_key, best_count = 0, -1
    for key, count in enumerate(counts):
        # ties go to the later key
        if count >= best_count:
            best_key, best_count = key, count
    return best_key, best_count, len(votes)


def _decrypt_template_block(aes_key: bytes, ciphertext: bytes) -> Optional[str]:
    decryptor = Cipher(algorithms.AES(bytes(aes_key)), modes.ECB()).decryptor()
    block = decryptor.update(bytes(ciphertext)) + decryptor.finalize()
    fmt = detect_image_format(block)
    return None if fmt == "bin" else fmt


def verify_aes_key(aes_key: bytes, templates: Iterable[bytes]) -> bool:
    """True when every template decrypts to a recognised image header."""
    templates = list(templates)
    return bool(templates) and all(
        _decrypt_template_block(aes_key, template) is not None for template in templates
    )


def _is_alnum(byte: int) -> bool:
    return bytes([byte]).isalnum()


def ascii_alnum_candidates(buf: bytes, length: int) -> list[bytes]:
    """Standalone runs of exactly `length` ASCII alphanumerics (16 or 32) in `buf`."""
    pattern = _ALNUM_RUNS.get(length)
    if pattern is None:
        return []
    buf = bytes(buf)
    out = []
    for match in pattern.finditer(buf):
        start, end = match.start(), match.end()
        left_ok = start == 0 or not _is_alnum(buf[start - 1])
        right_ok = end == len(buf) or not _is_alnum(buf[end])
        if left_ok and right_ok:
            out.append(buf[start:end])
    return out


def scan_candidate_buffer(buf: bytes, templates, seen: set) -> Optional[bytes]:
    """Try 32- then 16-character candidates in `buf` as AES keys; `seen` is updated."""
    candidates = [c[:16] for c in ascii_alnum_candidates(buf, 32)]
    candidates += ascii_alnum_candidates(buf, 16)
    for key in candidates:
        if key in seen:
            continue
        seen.add(key)
        if verify_aes_key(key, templates):
            return key
    return None


def is_candidate_page(protect: int) -> bool:
    """Whether a Windows memory region with this protection is worth scanning."""
    if protect == _PAGE_NOACCESS or protect & _PAGE_GUARD:
        return False
    base = protect & ~(_PAGE_GUARD | _PAGE_NOCACHE | _PAGE_WRITECOMBINE)
    return base in _WRITABLE_PAGES