import pytest

from devtreekit.util import (
    COMMON_OPTIONS,
    Option,
    decode_type,
    escape_path,
    format_data,
    format_usage,
    get_escape_char,
    is_printable_string,
    join_path,
    read_blob,
    write_blob,
)


def test_escape_path_escapes_spaces():
    assert escape_path("a b/c d") == "a\\ b/c\\ d"
    assert escape_path("plain") == "plain"


@pytest.mark.parametrize(
    "path,name,expected",
    [
        ("dir", "file", "dir/file"),
        ("dir/", "file", "dir/file"),
        ("", "file", "/file"),
    ],
)
def test_join_path(path, name, expected):
    assert join_path(path, name) == expected


@pytest.mark.parametrize(
    "data,expected",
    [
        (b"", False),
        (b"abc", False),
        (b"abc\0", True),
        (b"abc\0def\0", True),
        (b"abc\0\0", False),
        (b"\0", False),
        (b"a\x01c\0", False),
    ],
)
def test_is_printable_string(data, expected):
    assert is_printable_string(data) is expected


@pytest.mark.parametrize("letter,char", [("n", "\n"), ("t", "\t"), ("a", "\a"), ("r", "\r")])
def test_get_escape_char_simple(letter, char):
    assert get_escape_char("x" + letter + "rest", 1) == (char, 2)


def test_get_escape_char_octal_reads_up_to_three_digits():
    char, idx = get_escape_char("1017", 0)
    assert char == "A"
    assert idx == 3


def test_get_escape_char_octal_stops_at_non_digit():
    char, idx = get_escape_char("0z", 0)
    assert char == "\0"
    assert idx == 1


def test_get_escape_char_hex():
    char, idx = get_escape_char("x41zz", 0)
    assert char == "A"
    assert idx == 3


def test_get_escape_char_hex_without_digits_raises():
    with pytest.raises(ValueError):
        get_escape_char("xg", 0)


def test_get_escape_char_other_character_is_itself():
    assert get_escape_char('"', 0) == ('"', 1)


def _blob(totalsize, extra=b""):
    body = b"\xd0\x0d\xfe\xed" + totalsize.to_bytes(4, "big")
    body += bytes(range(totalsize - len(body)))
    return body + extra


def test_write_then_read_round_trip(tmp_path):
    blob = _blob(40)
    target = tmp_path / "out.dtb"
    write_blob(str(target), blob)
    assert read_blob(str(target)) == blob


def test_write_blob_truncates_to_totalsize(tmp_path):
    blob = _blob(24, extra=b"junkjunk")
    target = tmp_path / "out.dtb"
    write_blob(str(target), blob)
    data = read_blob(str(target))
    assert len(data) == 24
    assert data == blob[:24]


def test_write_blob_rejects_short_blob(tmp_path):
    with pytest.raises(ValueError):
        write_blob(str(tmp_path / "x.dtb"), b"\xd0\x0d")


def test_read_blob_missing_file_raises(tmp_path):
    with pytest.raises(OSError):
        read_blob(str(tmp_path / "missing.dtb"))


@pytest.mark.parametrize(
    "fmt,expected",
    [
        ("x", ("x", -1)),
        ("hx", ("x", 2)),
        ("hhx", ("x", 1)),
        ("bu", ("u", 1)),
        ("li", ("i", 4)),
        ("s", ("s", -1)),
        ("r", ("r", -1)),
        ("hs", ("s", -1)),
    ],
)
def test_decode_type_valid(fmt, expected):
    assert decode_type(fmt) == expected


@pytest.mark.parametrize("fmt", ["", "h", "q", "xx", "hhh", "lz"])
def test_decode_type_invalid(fmt):
    with pytest.raises(ValueError):
        decode_type(fmt)


def test_format_data_empty():
    assert format_data(b"") == ""


def test_format_data_strings():
    assert format_data(b"foo\0bar\0") == ' = "foo", "bar"'


def test_format_data_cells():
    out = format_data(b"\x00\x00\x00\x01\xde\xad\xbe\xef")
    assert out == " = <0x00000001 0xdeadbeef>"


def test_format_data_bytes():
    out = format_data(b"\x01\x02\x03")
    assert out.startswith(" = [")
    assert out.endswith("]")
    assert out[4:-1].split(" ") == ["01", "02", "03"]


def test_format_usage_layout():
    options = [Option("output", True, "o", "Output file")] + list(COMMON_OPTIONS)
    text = format_usage("prog <input>", "o:hV", options)
    lines = text.splitlines()
    assert lines[0] == "Usage: prog <input>"
    assert lines[2] == "Options: -[o:hV]"
    option_lines = lines[3:]
    assert len(option_lines) == 3
    helps = [opt.help for opt in options]
    columns = {line.index(help_text) for line, help_text in zip(option_lines, helps)}
    assert len(columns) == 1
    assert option_lines[0].startswith("  -o, --output <arg>")
    assert "Error:" not in text


def test_format_usage_with_error_and_no_short_flag():
    options = [Option("long-only", False, None, "No short form")]
    text = format_usage("prog", "", options, "unknown option")
    assert text.endswith("\nError: unknown option\n")
    assert "      --long-only No short form" in text