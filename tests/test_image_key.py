from pathlib import Path

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from wxdata.decoder import V2_MAGIC
from wxdata.image_key import (
    ImageKeyMaterial,
    ImageKeyProvider,
    LinuxImageKeyProvider,
    ascii_alnum_candidates,
    attach_root_for_db_dir,
    configured_db_dir_for_wxid,
    derive_xor_key_from_v2_dat,
    find_v2_template_ciphertexts,
    is_candidate_page,
    normalize_wxid,
    same_wxid,
    scan_candidate_buffer,
    verify_aes_key,
    wxid_from_db_dir,
    xwechat_files_root,
)

GOOD_AES = b"secret".ljust(16, b"0")
WRONG_AES = b"token".ljust(16, b"0")
PLAIN = b"\xFF\xD8\xFFtemplate-001!"


def _encrypt_block(aes_key: bytes, block: bytes) -> bytes:
    enc = Cipher(algorithms.AES(aes_key), modes.ECB()).encryptor()
    return enc.update(block) + enc.finalize()


def _write_v2(path: Path, aes_key: bytes, xor_key: int, plain: bytes = PLAIN) -> bytes:
    block = _encrypt_block(aes_key, plain)
    data = V2_MAGIC + (0).to_bytes(4, "little") + (0).to_bytes(4, "little") + b"\x00"
    data += block + b"\x00" + bytes([0xD9 ^ xor_key])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return block


class _FixedProvider(ImageKeyProvider):
    def __init__(self, material):
        self.material = material
        self.calls = []

    def get_key(self, wxid):
        self.calls.append(wxid)
        return self.material


def test_regex_candidates_respect_boundaries():
    buf = b"xx 0123456789ABCDef yy"
    assert ascii_alnum_candidates(buf, 16) == [buf[3:19]]


def test_regex_candidates_ignore_embedded_runs():
    assert ascii_alnum_candidates(b"x0123456789ABCDefz", 16) == []


def test_regex_candidates_unknown_length():
    assert ascii_alnum_candidates(b"0123456789ABCDef", 8) == []


def test_wxid_normalization_matches_expected_forms():
    assert normalize_wxid("wxid_abc_def") == "wxid_abc"
    assert normalize_wxid("your_wxid_a1b2") == "your_wxid"
    assert normalize_wxid("plain") == "plain"
    assert normalize_wxid("  ") == ""
    assert same_wxid("your_wxid_a1b2", "your_wxid")
    assert not same_wxid("alice", "bob")


def test_wxid_and_root_from_db_dir():
    db_dir = Path("/home/u/Documents/xwechat_files/your_wxid_a1b2/db_storage")
    assert wxid_from_db_dir(db_dir) == "your_wxid_a1b2"
    assert xwechat_files_root(db_dir) == Path("/home/u/Documents/xwechat_files")
    assert wxid_from_db_dir(Path("/data/db_storage")) is None
    assert xwechat_files_root(Path("/data/db_storage")) is None


def test_configured_db_dir_for_wxid():
    configured = Path("/home/u/Documents/xwechat_files/your_wxid_a1b2/db_storage")
    assert configured_db_dir_for_wxid(configured, "") == configured
    assert configured_db_dir_for_wxid(configured, "your_wxid") == configured
    assert configured_db_dir_for_wxid(configured, "other") == Path(
        "/home/u/Documents/xwechat_files/other/db_storage"
    )
    plain = Path("/data/db_storage")
    assert configured_db_dir_for_wxid(plain, "other") == plain


def test_attach_root_for_db_dir():
    assert attach_root_for_db_dir(Path("/x/acct/db_storage")) == Path("/x/acct/msg/attach")


def test_verify_aes_key():
    template = _encrypt_block(GOOD_AES, PLAIN)
    assert verify_aes_key(GOOD_AES, [template])
    assert not verify_aes_key(WRONG_AES, [template])
    assert not verify_aes_key(GOOD_AES, [])


def test_find_templates_prefers_thumbnails(tmp_path):
    thumb = _write_v2(tmp_path / "chat" / "2026-05" / "Img" / "a_t.dat", GOOD_AES, 42)
    _write_v2(tmp_path / "chat" / "2026-05" / "Img" / "b.dat", GOOD_AES, 42, b"\x89PNG" + b"\x00" * 12)
    assert find_v2_template_ciphertexts(tmp_path, 3, 64) == [thumb]


def test_find_templates_falls_back_to_any_dat(tmp_path):
    block = _write_v2(tmp_path / "Img" / "b.dat", GOOD_AES, 42)
    assert find_v2_template_ciphertexts(tmp_path, 3, 64) == [block]
    assert find_v2_template_ciphertexts(tmp_path / "missing", 3, 64) == []


def test_find_templates_deduplicates_and_limits(tmp_path):
    for idx in range(3):
        _write_v2(tmp_path / "Img" / f"s{idx}_t.dat", GOOD_AES, 42)
    assert len(find_v2_template_ciphertexts(tmp_path, 3, 64)) == 1


def test_derive_xor_key_votes(tmp_path):
    for idx in range(3):
        _write_v2(tmp_path / "Img" / f"s{idx}_t.dat", GOOD_AES, 42)
    assert derive_xor_key_from_v2_dat(tmp_path, 10, 3) == (42, 3, 3)
    assert derive_xor_key_from_v2_dat(tmp_path, 10, 4) is None
    assert derive_xor_key_from_v2_dat(tmp_path / "missing", 10, 1) is None


def test_scan_candidate_buffer_finds_key():
    buf = b"xx " + GOOD_AES + b"A" * 16 + b" yy " + WRONG_AES + b" zz"
    seen: set = set()
    template = _encrypt_block(GOOD_AES, PLAIN)
    assert scan_candidate_buffer(buf, [template], seen) == GOOD_AES
    assert GOOD_AES in seen
    assert scan_candidate_buffer(buf, [template], seen) is None


def test_is_candidate_page():
    assert is_candidate_page(0x04)
    assert is_candidate_page(0x04 | 0x200)
    assert is_candidate_page(0x80)
    assert not is_candidate_page(0x01)
    assert not is_candidate_page(0x04 | 0x100)
    assert not is_candidate_page(0x02)


def test_linux_provider_is_unsupported():
    with pytest.raises(RuntimeError):
        LinuxImageKeyProvider().get_key("wxid_abc")


def test_provider_helpers_delegate_to_get_key():
    material = ImageKeyMaterial(aes_key=GOOD_AES, xor_key=7)
    provider = _FixedProvider(material)
    assert provider.get_aes_key("x") == GOOD_AES
    assert provider.get_xor_key("y") == 7
    assert provider.calls == ["x", "y"]


def test_image_key_material_validates_length():
    with pytest.raises(ValueError):
        ImageKeyMaterial(aes_key=b"short", xor_key=1)