"""Rendering of daemon responses and freshness warnings."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import yaml

_WARNING_PREFIX = "[wx] warning: "


class Fmt(Enum):
    YAML = "yaml"
    JSON = "json"


@dataclass(frozen=True)
class OutputOpts:
    json: bool = False
    with_meta: bool = False
    debug_source: bool = False

    def request_flags(self) -> tuple[bool, bool]:
        """(with_meta, debug_source) to send; debug_source implies with_meta."""
        return (self.with_meta or self.debug_source, self.debug_source)


def resolve(json: bool) -> Fmt:
    """YAML by default, JSON when asked."""
    return Fmt.JSON if json else Fmt.YAML


def format_value(value: Any, fmt: Fmt) -> str:
    """Render a value as printed, including the trailing newline."""
    if fmt is Fmt.JSON:
        return json.dumps(value, ensure_ascii=False, indent=2) + "\n"
    return yaml.safe_dump(value, allow_unicode=True, sort_keys=False, default_flow_style=False)


def print_value(value: Any, fmt: Fmt) -> None:
    sys.stdout.write(format_value(value, fmt))


def print_response(data: Any, opts: OutputOpts) -> None:
    print_value(data, resolve(opts.json))


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _fmt_meta_ts(ts: int) -> str:
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return str(ts)


def warning_lines(data: Any) -> list[str]:
    """Human-readable warnings derived from the response's ``meta`` object."""
    if not isinstance(data, dict):
        return []
    meta = data.get("meta")
    if not isinstance(meta, dict):
        return []

    lines: list[str] = []
    shards = meta.get("unknown_shards")
    unknown = [s for s in shards if isinstance(s, str)] if isinstance(shards, list) else []
    if unknown:
        lines.append(
            f"found shards on disk that the daemon does not know: {', '.join(unknown)}; "
            "results may be incomplete. Run `wx init --force` to extract keys again."
        )

    status = meta.get("status")
    if status in ("possibly_stale", "possibly_stale_unknown_shards"):
        session_ts = _as_int(meta.get("session_last_timestamp"))
        chat_ts = _as_int(meta.get("chat_latest_timestamp"))
        if session_ts is not None and chat_ts is not None:
            subject = next(
                (data[k] for k in ("chat", "username") if isinstance(data.get(k), str)),
                "current query",
            )
            lines.append(
                f"session.db shows '{subject}' up to {_fmt_meta_ts(session_ts)}, "
                f"but this scan only reached {_fmt_meta_ts(chat_ts)}; "
                "results may be stale or incomplete."
            )
    return lines


def warning_block_text(data: Any) -> Optional[str]:
    lines = warning_lines(data)
    if not lines:
        return None
    return "\n".join(_WARNING_PREFIX + line for line in lines)


def warning_block_markdown(data: Any) -> Optional[str]:
    lines = warning_lines(data)
    if not lines:
        return None
    return "> [!WARNING]\n" + "".join(f"> {line}\n" for line in lines)


def emit_warnings(data: Any) -> None:
    for line in warning_lines(data):
        print(_WARNING_PREFIX + line, file=sys.stderr)