"""V2 image key derivation from the files WeChat keeps on disk on macOS.

The main path reads the uin from ``key_<uin>_*.statistic`` file names in the
``kvcomm`` directory and derives the AES key as
``md5(str(uin) + wxid).hexdigest()[:16]``; the XOR key is ``uin & 0xff``.

The fallback narrows the uin search to 2**24 values using
``md5(str(uin))[:4] == wxid_suffix`` and ``uin & 0xff == xor_key``, then
checks each derived AES key against V2 template blocks.
"""

from __future__ import annotations

import hashlib
import sys
import threading
from pathlib import Path
from typing import Optional

from .config import load_config
from .image_key import (
    ImageKeyMaterial,
    ImageKeyProvider,
    LinuxImageKeyProvider,
    attach_root_for_db_dir,
    configured_db_dir_for_wxid,
    derive_xor_key_from_v2_dat,
    find_v2_template_ciphertexts,
    normalize_wxid,
    verify_aes_key,
    wxid_from_db_dir,
)

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_UIN_UPPER_SPACE = 1 << 24
_U32_MAX = 0xFFFF_FFFF


def _is_hex(text: str) -> bool:
    return bool(text) and all(c in _HEX_DIGITS for c in text)


class MacosImageKeyProvider(ImageKeyProvider):
    """Derives V2 image keys from the configured data directory, caching per wxid."""

    def __init__(self, configured_db_dir, config_error: Optional[str] = None) -> None:
        self._configured_db_dir = Path(configured_db_dir) if configured_db_dir is not None else None
        self._config_error = config_error
        self._cache: dict[str, ImageKeyMaterial] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_current_config(cls) -> "MacosImageKeyProvider":
        try:
            db_dir = load_config().db_dir
        except (OSError, ValueError) as exc:
            return cls(None, config_error=str(exc))
        return cls(db_dir)

    def get_key(self, wxid: str) -> ImageKeyMaterial:
        cache_key = normalize_wxid(wxid)
        with self._lock:
            found = self._cache.get(cache_key)
        if found is not None:
            return found

        if self._configured_db_dir is None:
            raise RuntimeError(f"failed to read config.db_dir: {self._config_error}")
        db_dir = configured_db_dir_for_wxid(self._configured_db_dir, wxid)
        attach_dir = attach_root_for_db_dir(db_dir)
        key = derive_key_for_paths(db_dir, attach_dir)
        with self._lock:
            self._cache[cache_key] = key
        return key


def derive_key_for_paths(db_dir, attach_dir) -> ImageKeyMaterial:
    """Derive the key material for an account, trying kvcomm first, then brute force."""
    db_dir = Path(db_dir)
    attach_dir = Path(attach_dir)
    templates = find_v2_template_ciphertexts(attach_dir, 3, 64)
    if not templates:
        raise LookupError(f"no V2 template files found under {attach_dir}")

    found = find_via_kvcomm(db_dir, templates)
    if found is not None:
        return found

    parts = extract_wxid_parts(db_dir)
    if parts is None:
        raise LookupError("db_dir has no wxid with a 4-digit hex suffix usable for the fallback")
    wxid_full, wxid_norm, suffix = parts

    voted = derive_xor_key_from_v2_dat(attach_dir, 10, 3)
    if voted is None:
        raise LookupError("too few V2 .dat samples to vote on the xor key")
    xor_key = voted[0]

    for wxid in preferred_wxid_candidates(wxid_full, wxid_norm):
        aes_key = bruteforce_aes_key(xor_key, suffix, wxid, templates)
        if aes_key is not None:
            return ImageKeyMaterial(aes_key=aes_key, xor_key=xor_key)

    raise LookupError("macOS V2 image key derivation failed")


def find_via_kvcomm(db_dir, templates) -> Optional[ImageKeyMaterial]:
    """Try every uin found in kvcomm file names against every wxid candidate."""
    kvcomm_dir = find_existing_kvcomm_dir(db_dir)
    if kvcomm_dir is None:
        return None
    codes = collect_kvcomm_codes(kvcomm_dir)
    if not codes:
        return None
    wxids = collect_wxid_candidates(db_dir)
    for wxid in wxids:
        for code in codes:
            candidate = derive_image_key_material(code, wxid)
            if verify_aes_key(candidate.aes_key, templates):
                return candidate
    return None


def _aes_key_from(uin_text: str, wxid: str) -> bytes:
    digest = hashlib.md5(f"{uin_text}{wxid}".encode("utf-8")).hexdigest()
    return digest[:16].encode("ascii")


def derive_image_key_material(code: int, wxid: str) -> ImageKeyMaterial:
    """Key material for a uin and wxid: the AES key from md5, the XOR key from the low byte."""
    return ImageKeyMaterial(aes_key=_aes_key_from(str(code), wxid), xor_key=code & 0xFF)


def collect_wxid_candidates(db_dir) -> list[str]:
    """The raw wxid from the path and, if different, its normalised form."""
    raw = wxid_from_db_dir(db_dir)
    if raw is None:
        return []
    out = [raw]
    normalized = normalize_wxid(raw)
    if normalized != raw:
        out.append(normalized)
    return out


def extract_wxid_parts(db_dir) -> Optional[tuple[str, str, str]]:
    """(raw wxid, normalised wxid, lower-case 4-digit hex suffix), or None."""
    raw = wxid_from_db_dir(db_dir)
    if raw is None or "_" not in raw:
        return None
    suffix = raw.rsplit("_", 1)[1]
    if len(suffix) != 4 or not _is_hex(suffix):
        return None
    return raw, normalize_wxid(raw), suffix.lower()


def preferred_wxid_candidates(raw: str, normalized: str) -> list[str]:
    """Order in which to try wxid forms: normalised first when it differs."""
    if raw == normalized:
        return [raw]
    return [normalized, raw]


def _home_or_none() -> Optional[Path]:
    try:
        return Path.home()
    except (RuntimeError, KeyError, OSError):
        return None


def derive_kvcomm_dir_candidates(db_dir) -> list[Path]:
    """Possible kvcomm directories for an account, without duplicates."""
    parts = Path(db_dir).parts
    candidates: list[Path] = []
    if "xwechat_files" in parts:
        idx = parts.index("xwechat_files")
        documents_root = Path(*parts[:idx])
        candidates.append(documents_root / "app_data/net/kvcomm")
        candidates.append(documents_root / "xwechat/net/kvcomm")
        if idx >= 1:
            container_root = Path(*parts[: idx - 1])
            candidates.append(
                container_root
                / "Library/Application Support/com.tencent.xinWeChat/xwechat/net/kvcomm"
            )
            candidates.append(
                container_root / "Library/Application Support/com.tencent.xinWeChat/net/kvcomm"
            )
    home = _home_or_none()
    if home is not None:
        candidates.append(
            home / "Library/Containers/com.tencent.xinWeChat/Data/Documents/app_data/net/kvcomm"
        )

    deduped: list[Path] = []
    for candidate in candidates:
        if candidate not in deduped:
            deduped.append(candidate)
    return deduped


def find_existing_kvcomm_dir(db_dir) -> Optional[Path]:
    return next((p for p in derive_kvcomm_dir_candidates(db_dir) if p.is_dir()), None)


def _parse_u32(text: str) -> Optional[int]:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not digits.isascii() or not digits.isdigit():
        return None
    value = int(digits)
    return value if value <= _U32_MAX else None


def collect_kvcomm_codes(kvcomm_dir) -> list[int]:
    """Sorted unique uins taken from ``key_<uin>_*`` file names."""
    codes: set[int] = set()
    for entry in Path(kvcomm_dir).iterdir():
        name = entry.name
        if not name.startswith("key_"):
            continue
        rest = name[len("key_"):]
        if "_" not in rest:
            continue
        code = _parse_u32(rest.split("_", 1)[0])
        if code is not None:
            codes.add(code)
    return sorted(codes)


def _hex_prefix_to_bytes(suffix_hex: str) -> bytes:
    if len(suffix_hex) != 4 or not _is_hex(suffix_hex):
        raise ValueError(f"wxid suffix is not 4 hex digits: {suffix_hex}")
    return bytes.fromhex(suffix_hex)


def bruteforce_aes_key(xor_key: int, suffix_hex: str, wxid: str, templates) -> Optional[bytes]:
    """Search uins whose low byte is `xor_key` and whose md5 starts with the suffix."""
    suffix = _hex_prefix_to_bytes(suffix_hex)
    templates = list(templates)
    md5 = hashlib.md5
    for upper in range(_UIN_UPPER_SPACE):
        uin_text = str((upper << 8) | xor_key)
        if md5(uin_text.encode("ascii")).digest()[:2] != suffix:
            continue
        aes_key = _aes_key_from(uin_text, wxid)
        if verify_aes_key(aes_key, templates):
            return aes_key
    return None


def default_provider() -> Optional[ImageKeyProvider]:
    """The image key provider for the running platform, if one exists."""
    if sys.platform == "darwin":
        return MacosImageKeyProvider.from_current_config()
    if sys.platform.startswith("linux"):
        return LinuxImageKeyProvider()
    return None