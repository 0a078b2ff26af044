"""Rendering of a chat history response into an export document."""

from __future__ import annotations

import json
from typing import Any

import yaml

from .output import warning_block_markdown, warning_block_text


def _str_field(obj: Any, name: str) -> str:
    if isinstance(obj, dict):
        value = obj.get(name)
        if isinstance(value, str):
            return value
    return ""


def _messages(data: Any) -> list:
    if isinstance(data, dict):
        messages = data.get("messages")
        if isinstance(messages, list):
            return messages
    return []


def _render_txt(data: Any, chat_name: str, is_group: bool, messages: list) -> str:
    group_str = "[group]" if is_group else ""
    lines = [f"=== {chat_name}{group_str} ({len(messages)} messages) ===\n"]
    warn = warning_block_text(data)
    if warn is not None:
        lines.append(warn)
        lines.append("")
    for message in messages:
        sender = _str_field(message, "sender")
        sender_str = f"{sender}: " if sender else ""
        lines.append(
            f"[{_str_field(message, 'time')}] {sender_str}{_str_field(message, 'content')}"
        )
    return "\n".join(lines)


def _render_markdown(data: Any, chat_name: str, is_group: bool, messages: list) -> str:
    group_str = " (group chat)" if is_group else ""
    lines = [
        f"# {chat_name}{group_str}",
        f"\n> Exported {len(messages)} messages\n",
    ]
    warn = warning_block_markdown(data)
    if warn is not None:
        lines.append(warn)
    for message in messages:
        sender = _str_field(message, "sender")
        content = _str_field(message, "content").replace("\n", "\n> ")
        sender_md = f"**{sender}**: " if sender else ""
        lines.append(f"### {_str_field(message, 'time')}\n\n{sender_md}{content}\n")
    return "\n".join(lines)


def render_export(data: Any, fmt: str) -> str:
    """Render a history response as ``json``, ``yaml``, ``txt`` or markdown (the default)."""
    if fmt == "json":
        return json.dumps(data, ensure_ascii=False, indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(data, allow_unicode=True, sort_keys=False, default_flow_style=False)

    messages = _messages(data)
    chat_name = _str_field(data, "chat")
    is_group = isinstance(data, dict) and data.get("is_group") is True
    if fmt == "txt":
        return _render_txt(data, chat_name, is_group, messages)
    return _render_markdown(data, chat_name, is_group, messages)