import io
import struct

import pytest

from litefs.posmap import (
    Pos,
    compile_match,
    format_node_id,
    format_txid,
    parse_node_id,
    parse_txid,
    read_pos_map,
    write_pos_map,
)


@pytest.mark.parametrize(
    "expr, text, matches",
    [
        ("/build/*", "/build", False),
        ("/build/*", "/build/", True),
        ("/build/*", "/build/foo", True),
        ("/build/*", "/build/foo/bar", True),
        ("*.png", "/images/pic.png", True),
        ("*foo*", "/foo", True),
        ("*foo*", "foo/bar", True),
        ("*foo*", "/foo/bar", True),
        ("*foo*", "/bar/baz", False),
    ],
)
def test_compile_match(expr, text, matches):
    assert (compile_match(expr).search(text) is not None) is matches


def test_compile_match_escapes_dots():
    assert compile_match("*.png").search("/images/picxpng") is None


def test_pos_map_round_trip():
    pos_map = {"db": Pos(1, 0xF630F5AE3060002C), "another": Pos(2, 5)}
    buf = io.BytesIO()
    write_pos_map(buf, pos_map)
    buf.seek(0)
    assert read_pos_map(buf) == pos_map


def test_pos_map_wire_format():
    buf = io.BytesIO()
    write_pos_map(buf, {"db": Pos(1, 2)})
    expected = (
        struct.pack(">I", 1)
        + struct.pack(">I", 2)
        + b"db"
        + struct.pack(">Q", 1)
        + struct.pack(">Q", 2)
    )
    assert buf.getvalue() == expected


def test_pos_map_empty():
    buf = io.BytesIO()
    write_pos_map(buf, {})
    assert buf.getvalue() == b"\x00\x00\x00\x00"
    assert read_pos_map(io.BytesIO(buf.getvalue())) == {}


def test_pos_map_sorted_names():
    buf = io.BytesIO()
    write_pos_map(buf, {"b": Pos(1, 1), "a": Pos(2, 2)})
    data = buf.getvalue()
    assert data.index(b"a") < data.index(b"b")


def test_pos_map_truncated():
    buf = io.BytesIO()
    write_pos_map(buf, {"db": Pos(1, 2)})
    with pytest.raises(EOFError):
        read_pos_map(io.BytesIO(buf.getvalue()[:-3]))


def test_pos_map_empty_stream():
    with pytest.raises(EOFError):
        read_pos_map(io.BytesIO(b""))


def test_format_txid():
    assert format_txid(1) == "0000000000000001"
    assert parse_txid("0000000000000002") == 2


@pytest.mark.parametrize("text", ["", "1", "zzzzzzzzzzzzzzzz", "00000000000000001"])
def test_parse_txid_invalid(text):
    with pytest.raises(ValueError):
        parse_txid(text)


def test_node_id_round_trip():
    for node_id in (0, 1, 0xABCDEF, 2**64 - 1):
        text = format_node_id(node_id)
        assert len(text) == 16
        assert parse_node_id(text) == node_id


def test_parse_node_id_invalid():
    with pytest.raises(ValueError):
        parse_node_id("abc")


def test_pos_str():
    assert str(Pos(1, 0xF630F5AE3060002C)) == "0000000000000001/f630f5ae3060002c"


def test_pos_json_round_trip():
    pos = Pos(3, 0x80000000000003E8)
    assert Pos.from_json(pos.to_json()) == pos
    assert Pos.from_json(None) == Pos()