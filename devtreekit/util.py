"""Small helpers shared by the device tree tools."""

from __future__ import annotations

import string
import sys
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "Option",
    "COMMON_SHORT_OPTS",
    "COMMON_OPTIONS",
    "USAGE_TYPE_MSG",
    "escape_path",
    "join_path",
    "is_printable_string",
    "get_escape_char",
    "read_blob",
    "write_blob",
    "decode_type",
    "format_data",
    "format_usage",
]

USAGE_TYPE_MSG = (
    "<type>\ts=string, i=int, u=unsigned, x=hex, r=raw\n"
    "\tOptional modifier prefix:\n"
    "\t\thh or b=byte, h=2 byte, l=4 byte (default)"
)

_ARG_PLACEHOLDER = "<arg>"
_OCTAL_DIGITS = frozenset("01234567")
_HEX_DIGITS = frozenset(string.hexdigits)
_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
}


@dataclass(frozen=True)
class Option:
    """A command-line option as shown in a usage message."""

    name: str
    has_arg: bool
    short: str | None
    help: str


COMMON_SHORT_OPTS = "hV"
COMMON_OPTIONS = (
    Option("help", False, "h", "Print this help and exit"),
    Option("version", False, "V", "Print version and exit"),
)


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def escape_path(path: str) -> str:
    """Return *path* with every space escaped by a backslash."""
    return path.replace(" ", "\\ ")


def join_path(path: str, name: str) -> str:
    """Join a directory and a file name with exactly one slash between them."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def is_printable_string(data: bytes) -> bool:
    """Tell whether *data* is one or more non-empty, NUL-terminated printable strings."""
    if not data or data[-1] != 0:
        return False
    return all(
        segment and all(_isprint(b) for b in segment)
        for segment in data[:-1].split(b"\0")
    )


def _leading_digits(text: str, limit: int, digits: frozenset[str]) -> str:
    taken = []
    for ch in text[:limit]:
        if ch not in digits:
            break
        taken.append(ch)
    return "".join(taken)


def get_escape_char(s: str, i: int) -> tuple[str, int]:
    """Decode the escape sequence starting at index *i* of *s*.

    *i* points just past the backslash. Returns the decoded character and
    the index of the first character after the sequence.
    """
    c = s[i] if i < len(s) else "\0"
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    if c in _OCTAL_DIGITS:
        digits = _leading_digits(s[i:], 3, _OCTAL_DIGITS)
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _leading_digits(s[i + 1 :], 2, _HEX_DIGITS)
        if not digits:
            raise ValueError("\\x used with no following hex digits")
        return chr(int(digits, 16)), i + 1 + len(digits)
    return c, i + 1


def read_blob(filename: str) -> bytes:
    """Read a whole device tree blob from *filename*, or stdin for ``-``."""
    if filename == "-":
        return sys.stdin.buffer.read()
    return Path(filename).read_bytes()


def _totalsize(blob: bytes) -> int:
    if len(blob) < 8:
        raise ValueError("blob too short to hold a header")
    return int.from_bytes(blob[4:8], "big")


def write_blob(filename: str, blob: bytes) -> None:
    """Write the blob, up to its header's total size, to *filename* or stdout for ``-``."""
    payload = bytes(blob[: _totalsize(blob)])
    if filename == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    Path(filename).write_bytes(payload)


def decode_type(fmt: str) -> tuple[str, int]:
    """Decode a type string such as ``hx`` into ``(type, size)``.

    The size is -1 where none applies. Raises ValueError on a bad format.
    """
    if not fmt:
        raise ValueError("empty type format")
    pos = 0
    qualifier = ""
    if fmt[0] in "hlLb":
        qualifier = fmt[0]
        pos = 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            if fmt[pos] == "h":
                qualifier = "b"
            pos += 1

    if pos >= len(fmt) or fmt[pos] not in "iuxsr":
        raise ValueError(f"invalid type format {fmt!r}")
    kind = fmt[pos]
    size = -1
    if kind not in "sr":
        size = {"b": 1, "h": 2, "l": 4}.get(qualifier, -1)
    if pos + 1 != len(fmt):
        raise ValueError(f"invalid type format {fmt!r}")
    return kind, size


def format_data(data: bytes) -> str:
    """Render property data as strings, cells or bytes, as the tools print it."""
    if not data:
        return ""
    if is_printable_string(data):
        strings = data[:-1].split(b"\0")
        return " = " + ", ".join(f'"{s.decode("ascii")}"' for s in strings)
    if len(data) % 4 == 0:
        cells = (
            int.from_bytes(data[i : i + 4], "big") for i in range(0, len(data), 4)
        )
        return " = <" + " ".join(f"0x{c:08x}" for c in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def format_usage(
    synopsis: str,
    short_opts: str,
    options: list[Option] | tuple[Option, ...],
    errmsg: str | None = None,
) -> str:
    """Build the usage text for a tool, with an error line if *errmsg* is given."""
    arg_len = len(_ARG_PLACEHOLDER) + 1
    optlen = max(
        (len(o.name) + 1 + (arg_len if o.has_arg else 0) for o in options),
        default=0,
    )

    lines = [f"Usage: {synopsis}\n\nOptions: -[{short_opts}]\n"]
    for opt in options:
        flag = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * (optlen - len(opt.name) - arg_len)
            long_part = f"--{opt.name} {_ARG_PLACEHOLDER}{pad}"
        else:
            long_part = f"--{opt.name:<{optlen}}"
        lines.append(f"{flag}{long_part}{opt.help}\n")
    if errmsg is not None:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)