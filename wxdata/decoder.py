"""Decoding of attachment ``.dat`` files, dispatched on the 6-byte header magic.

| header[0..6]     | decoder      | notes                                       |
|------------------|--------------|---------------------------------------------|
| ``07 08 V2 08 07`` | ``v2``       | AES-128-ECB + XOR, needs the image AES key  |
| ``07 08 V1 08 07`` | ``v1_aes``   | fixed AES key ``cfcd208495d565ef``          |
| anything else    | ``legacy_xor`` | single-byte XOR, key found from image magic |
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

V2_MAGIC = bytes([0x07, 0x08, ord("V"), ord("2"), 0x08, 0x07])
V1_MAGIC = bytes([0x07, 0x08, ord("V"), ord("1"), 0x08, 0x07])

_V1_FIXED_KEY = b"cfcd208495d565ef"
_HEADER_SIZE = 15
_DEFAULT_XOR_KEY = 0x88

_PNG = bytes([0x89, 0x50, 0x4E, 0x47])
_GIF = bytes([0x47, 0x49, 0x46, 0x38])
_TIF = bytes([0x49, 0x49, 0x2A, 0x00])
_WEBP_RIFF = bytes([0x52, 0x49, 0x46, 0x46])
_JPG = bytes([0xFF, 0xD8, 0xFF])
_BMP = bytes([0x42, 0x4D])


class DecodeError(ValueError):
    """A .dat file could not be decoded."""


@dataclass(frozen=True)
class DecodedImage:
    """Decoded bytes, the detected file extension and the decoder that produced them."""

    data: bytes
    format: str
    decoder: str


@dataclass(frozen=True)
class V2KeyMaterial:
    """Keys for V2 files: a 16-byte AES key (optional) and a single XOR byte."""

    aes_key: Optional[bytes] = None
    xor_key: int = 0

    def __post_init__(self) -> None:
        if self.aes_key is not None and len(self.aes_key) != 16:
            raise ValueError("AES key must be exactly 16 bytes")
        if not 0 <= self.xor_key <= 0xFF:
            raise ValueError("XOR key must fit in one byte")

    @classmethod
    def with_aes(cls, key: bytes) -> "V2KeyMaterial":
        return cls(aes_key=bytes(key), xor_key=_DEFAULT_XOR_KEY)


def dispatch(dat_bytes: bytes, v2_key: Optional[V2KeyMaterial] = None) -> DecodedImage:
    """Decode a .dat file with the decoder selected by its header magic."""
    key = v2_key if v2_key is not None else V2KeyMaterial()
    head = bytes(dat_bytes[:6])
    if len(dat_bytes) >= 6:
        if head == V2_MAGIC:
            return decode_v2(dat_bytes, key)
        if head == V1_MAGIC:
            decoded = decode_v2(
                dat_bytes, V2KeyMaterial(aes_key=_V1_FIXED_KEY, xor_key=key.xor_key)
            )
            return DecodedImage(data=decoded.data, format=decoded.format, decoder="v1_aes")
    if not dat_bytes:
        raise DecodeError("empty .dat file")
    return decode_xor(dat_bytes)


def detect_image_format(data: bytes) -> str:
    """Guess an image file extension from leading magic bytes; ``bin`` if unknown."""
    if data[:4] == b"wxgf":
        return "hevc"
    if data[:3] == _JPG:
        return "jpg"
    if data[:4] == _PNG:
        return "png"
    if data[:3] == b"GIF":
        return "gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data[:4] == _TIF:
        return "tif"
    if data[:2] == b"BM":
        return "bmp"
    return "bin"


def _try_magic(header: bytes, magic: bytes) -> Optional[int]:
    if len(header) < len(magic):
        return None
    key = header[0] ^ magic[0]
    if all(h ^ key == m for h, m in zip(header[1:], magic[1:])):
        return key
    return None


def detect_xor_key(file_bytes: bytes) -> Optional[int]:
    """Find the single-byte XOR key of a legacy .dat file, or None."""
    if len(file_bytes) < 4:
        return None
    header = bytes(file_bytes[:16])

    for magic in (_PNG, _GIF, _TIF, _WEBP_RIFF, _JPG):
        key = _try_magic(header, magic)
        if key is not None:
            return key

    # BMP has only two magic bytes; check the file header for plausibility.
    key = _try_magic(header, _BMP)
    if key is not None and len(header) >= 14:
        dec = bytes(b ^ key for b in header[:14])
        bmp_size = int.from_bytes(dec[2:6], "little")
        bmp_offset = int.from_bytes(dec[10:14], "little")
        file_size = len(file_bytes) & 0xFFFF_FFFF
        if abs(file_size - bmp_size) < 1024 and 14 <= bmp_offset <= 1078:
            return key
    return None


def decode_xor(file_bytes: bytes) -> DecodedImage:
    """Decode a legacy single-byte XOR .dat file."""
    key = detect_xor_key(file_bytes)
    if key is None:
        raise DecodeError("legacy XOR: no known image magic (key detection failed)")
    data = bytes(b ^ key for b in file_bytes)
    fmt = detect_image_format(data)
    if fmt == "bin":
        raise DecodeError(f"legacy XOR: key=0x{key:02x} but decoded magic is unknown")
    return DecodedImage(data=data, format=fmt, decoder="legacy_xor")


def _aes_ecb_decrypt_pkcs7(key: bytes, cipher: bytes) -> bytes:
    if not cipher or len(cipher) % 16 != 0:
        raise DecodeError(f"AES input length {len(cipher)} is not a multiple of 16")
    decryptor = Cipher(algorithms.AES(key), modes.ECB()).decryptor()
    out = decryptor.update(cipher) + decryptor.finalize()
    pad = out[-1]
    if pad == 0 or pad > 16 or pad > len(out):
        raise DecodeError(f"AES PKCS7: invalid padding length {pad}")
    if any(b != pad for b in out[-pad:]):
        raise DecodeError("AES PKCS7: inconsistent padding bytes")
    return out[:-pad]


def decode_v2(file_bytes: bytes, key: V2KeyMaterial) -> DecodedImage:
    """Decode a V1/V2 .dat file: AES-ECB segment, raw segment, XOR segment."""
    file_bytes = bytes(file_bytes)
    total = len(file_bytes)
    if total < _HEADER_SIZE:
        raise DecodeError(f"V2 .dat: file too short ({total} < {_HEADER_SIZE} bytes)")
    magic = file_bytes[:6]
    if magic not in (V2_MAGIC, V1_MAGIC):
        raise DecodeError("V2 .dat: header magic is neither V1 nor V2")
    if key.aes_key is None:
        raise DecodeError("V2 .dat: an image AES key is required")

    aes_size = int.from_bytes(file_bytes[6:10], "little")
    xor_size = int.from_bytes(file_bytes[10:14], "little")
    # PKCS7 always adds padding: a whole extra block when already aligned.
    aligned_aes_size = aes_size + (16 - aes_size % 16)

    aes_end = _HEADER_SIZE + aligned_aes_size
    if aes_end > total:
        raise DecodeError(
            f"V2 .dat: header claims aes_size={aes_size} (aligned={aligned_aes_size}) "
            f"beyond file length {total}"
        )
    if xor_size > total:
        raise DecodeError(f"V2 .dat: header claims xor_size={xor_size} beyond file length {total}")
    raw_end = total - xor_size
    if aes_end > raw_end:
        raise DecodeError(f"V2 .dat: aes_end={aes_end} > raw_end={raw_end} (segments overlap)")

    dec_aes = _aes_ecb_decrypt_pkcs7(key.aes_key, file_bytes[_HEADER_SIZE:aes_end])
    raw_data = file_bytes[aes_end:raw_end]
    xor_data = bytes(b ^ key.xor_key for b in file_bytes[raw_end:])

    out = dec_aes + raw_data + xor_data
    fmt = detect_image_format(out)
    if fmt == "bin":
        raise DecodeError("V2 .dat: AES decryption succeeded but the result is not a known image (wrong key?)")
    return DecodedImage(data=out, format=fmt, decoder="v2")