import json

import yaml

from wxdata.output import (
    Fmt,
    OutputOpts,
    emit_warnings,
    format_value,
    print_value,
    resolve,
    warning_block_markdown,
    warning_block_text,
    warning_lines,
)


def stale_data(**extra):
    data = {
        "chat": "alice",
        "meta": {
            "status": "possibly_stale",
            "session_last_timestamp": 1_700_000_000,
            "chat_latest_timestamp": 1_600_000_000,
        },
    }
    data.update(extra)
    return data


def test_request_flags_debug_implies_meta():
    assert OutputOpts(json=False, with_meta=False, debug_source=True).request_flags() == (True, True)
    assert OutputOpts(with_meta=True).request_flags() == (True, False)
    assert OutputOpts().request_flags() == (False, False)


def test_resolve():
    assert resolve(True) is Fmt.JSON
    assert resolve(False) is Fmt.YAML


def test_json_round_trip():
    value = {"messages": [{"content": "你好", "n": 3}], "ok": True}
    text = format_value(value, Fmt.JSON)
    assert text.endswith("\n")
    assert json.loads(text) == value


def test_yaml_round_trip():
    value = {"b": [1, 2], "a": "文本"}
    text = format_value(value, Fmt.YAML)
    assert yaml.safe_load(text) == value
    assert list(yaml.safe_load(text)) == ["b", "a"]


def test_print_value_writes_stdout(capsys):
    print_value([1, 2], Fmt.JSON)
    assert json.loads(capsys.readouterr().out) == [1, 2]


def test_no_meta_no_warnings():
    assert warning_lines({"chat": "x"}) == []
    assert warning_lines({"meta": "not an object"}) == []
    assert warning_block_text({}) is None
    assert warning_block_markdown({}) is None


def test_unknown_shards_warning():
    lines = warning_lines({"meta": {"unknown_shards": ["message_7.db", 5, "message_8.db"]}})
    assert len(lines) == 1
    assert "message_7.db, message_8.db" in lines[0]


def test_stale_warning_uses_chat_subject():
    lines = warning_lines(stale_data())
    assert len(lines) == 1
    assert "'alice'" in lines[0]


def test_stale_warning_falls_back_to_username():
    data = stale_data(username="bob")
    del data["chat"]
    lines = warning_lines(data)
    assert "'bob'" in lines[0]


def test_stale_without_timestamps_is_silent():
    data = {"meta": {"status": "possibly_stale", "session_last_timestamp": 5}}
    assert warning_lines(data) == []


def test_markdown_block():
    block = warning_block_markdown(stale_data())
    assert block.startswith("> [!WARNING]\n")
    assert block.endswith("\n")
    assert len(block.splitlines()) == 2


def test_text_block_prefixes_each_line():
    data = stale_data()
    data["meta"]["unknown_shards"] = ["message_9.db"]
    block = warning_block_text(data)
    lines = block.split("\n")
    assert len(lines) == 2
    assert all(line.startswith("[wx]") for line in lines)


def test_emit_warnings_to_stderr(capsys):
    emit_warnings(stale_data())
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "alice" in captured.err