from datetime import datetime

import pytest

from wxdata.timeparse import parse_fav_type, parse_msg_type, parse_time, parse_time_end


def test_parse_date_is_local_midnight():
    ts = parse_time("2024-03-05")
    assert datetime.fromtimestamp(ts) == datetime(2024, 3, 5, 0, 0, 0)


def test_parse_minutes_and_seconds():
    assert datetime.fromtimestamp(parse_time("2024-03-05 14:30")) == datetime(2024, 3, 5, 14, 30)
    assert datetime.fromtimestamp(parse_time("2024-03-05 14:30:15")) == datetime(2024, 3, 5, 14, 30, 15)


def test_parse_time_end_bare_date_is_end_of_day():
    ts = parse_time_end("2024-03-05")
    assert datetime.fromtimestamp(ts) == datetime(2024, 3, 5, 23, 59, 59)
    assert ts > parse_time("2024-03-05")


def test_parse_time_end_with_clock_matches_parse_time():
    assert parse_time_end("2024-03-05 08:00") == parse_time("2024-03-05 08:00")


def test_ordering_is_monotonic():
    assert parse_time("2024-03-05 00:00:01") > parse_time("2024-03-05")
    assert parse_time("2024-03-06") > parse_time_end("2024-03-05")


@pytest.mark.parametrize("bad", ["", "yesterday", "2024/03/05", "2024-13-01", "2024-03-05T10:00"])
def test_parse_time_rejects_bad_input(bad):
    with pytest.raises(ValueError):
        parse_time(bad)


def test_parse_time_end_rejects_bad_input():
    with pytest.raises(ValueError):
        parse_time_end("not-a-dt")


@pytest.mark.parametrize(
    "name,value",
    [
        ("text", 1),
        ("image", 3),
        ("voice", 34),
        ("video", 43),
        ("sticker", 47),
        ("location", 48),
        ("link", 49),
        ("file", 49),
        ("call", 50),
        ("system", 10000),
    ],
)
def test_parse_msg_type(name, value):
    assert parse_msg_type(name) == value


def test_parse_msg_type_unknown():
    assert parse_msg_type("gif") is None


@pytest.mark.parametrize(
    "name,value",
    [("text", 1), ("image", 2), ("article", 5), ("card", 19), ("video", 20)],
)
def test_parse_fav_type(name, value):
    assert parse_fav_type(name) == value


def test_parse_fav_type_unknown():
    assert parse_fav_type("voice") is None