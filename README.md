# wxdata

A library for working with the data a WeChat 4.x client keeps on the local disk:

- locating the data directory and the configuration file (`wxdata.config`)
- opaque, round-trippable attachment IDs (`wxdata.attachment_id`)
- finding the `.dat` file behind an attachment through `message_resource.db`
  (`wxdata.resolver`)
- decoding `.dat` images: legacy single-byte XOR, V1 fixed-key AES and
  V2 AES + XOR (`wxdata.decoder`)
- recovering V2 image key material (`wxdata.image_key`, `wxdata.macos_key`)
- time and type parsing for queries (`wxdata.timeparse`) and rendering of
  results as YAML, JSON, Markdown or plain text (`wxdata.output`, `wxdata.export`)

It needs Python 3.10 or later and depends on `cryptography` and `pyyaml`.

## Configuration

`load_config()` looks for `config.json` in the current directory, next to the
running program, and in `~/.wx-cli/` (the invoking user's home when run under
sudo). Missing fields fall back to platform defaults; relative `keys_file` and
`decrypted_dir` paths are taken relative to the configuration file.

```python
from wxdata.config import load_config, auto_detect_db_dir

cfg = load_config()
print(cfg.db_dir, cfg.keys_file, cfg.decrypted_dir, cfg.wechat_process)

detected = auto_detect_db_dir()   # newest db_storage directory, or None
```

`sock_path()`, `pid_path()`, `log_path()`, `cache_dir()` and `mtime_file()`
return the well-known paths under `~/.wx-cli/`.

## Attachment IDs

An attachment ID is base64url (no padding) of a small JSON payload. The
triple `(chat, local_id, create_time)` identifies the message, because
`local_id` is reused within a chat.

```python
from wxdata.attachment_id import AttachmentId, AttachmentKind

kind = AttachmentKind.from_local_type(3)          # AttachmentKind.IMAGE
aid = AttachmentId(v=1, chat="room@chatroom", local_id=42,
                   create_time=1715678901, kind=kind, db=2)
encoded = aid.encode()
same = AttachmentId.decode(encoded)
```

Decoding raises `ValueError` on malformed input and on payload versions other than 1.

## Resolving and decoding an image

```python
from pathlib import Path
from wxdata.resolver import resolve, attach_root_for
from wxdata.decoder import dispatch, V2KeyMaterial

account_dir = Path(cfg.db_dir).parent
found = resolve(same, Path("decrypted/message_resource.db"), attach_root_for(account_dir))
print(found.md5, found.dat_path, found.size)

image = dispatch(found.dat_path.read_bytes(), V2KeyMaterial())
Path(f"out.{image.format}").write_bytes(image.data)
print(image.decoder)   # legacy_xor, v1_aes or v2
```

Among full, `_h` and `_t` files the resolver prefers the full image, then the
HD thumbnail, then the thumbnail. It searches the month of the message and
the months either side before scanning the whole chat directory. A missing
resource row or file raises `AttachmentNotFound`; undecodable data raises
`DecodeError`.

V2 files need the image AES key. On macOS it is derived from files on disk:

```python
from wxdata.image_key import wxid_from_db_dir
from wxdata.macos_key import default_provider

provider = default_provider()
account = wxid_from_db_dir(cfg.db_dir)
material = provider.get_key(account)
image = dispatch(data, V2KeyMaterial(aes_key=material.aes_key, xor_key=material.xor_key))
```

On Linux, `default_provider()` returns a `LinuxImageKeyProvider`, whose
`get_key` raises `RuntimeError`: V2 keys are not supported there.

## Output helpers

```python
from wxdata.timeparse import parse_time, parse_time_end, parse_msg_type
from wxdata.output import resolve, format_value, warning_lines
from wxdata.export import render_export

since = parse_time("2025-08-01")
until = parse_time_end("2025-08-31")     # end of that day, local time
msg_type = parse_msg_type("image")       # 3

print(format_value({"chat": "room"}, resolve(json=False)))
print(render_export(history_data, "markdown"))
```

`warning_lines` turns the `meta` block of a result into human-readable
warnings about unknown shards or possibly stale data; `render_export`
accepts `json`, `yaml`, `txt` and, for anything else, Markdown.

## What it does not do

This is a library only. It installs no command, runs no background service
and does not extract database keys or decrypt the SQLCipher databases: the
resolver expects an already decrypted `message_resource.db`. On Windows,
`default_provider()` returns `None`; `image_key` has the helpers for checking
candidate keys (`scan_candidate_buffer`, `is_candidate_page`), but nothing
here reads another process's memory.