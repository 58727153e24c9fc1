"""Writing a live device tree as YAML."""

from __future__ import annotations

from devtreekit.livetree import DeviceTreeInfo, Marker, MarkerType, Node, Property

__all__ = ["YamlEmitError", "dt_to_yaml"]

_BEST_WIDTH = 80
_INT_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}
_WIDTHS = {
    MarkerType.TYPE_UINT16: 2,
    MarkerType.TYPE_UINT32: 4,
    MarkerType.TYPE_UINT64: 8,
}
_LEADING_INDICATORS = frozenset("#,[]{}&*!|>'\"%@`")
_ESCAPES = {
    0x00: "0",
    0x07: "a",
    0x08: "b",
    0x09: "t",
    0x0A: "n",
    0x0B: "v",
    0x0C: "f",
    0x0D: "r",
    0x1B: "e",
    0x22: '"',
    0x5C: "\\",
}


class YamlEmitError(Exception):
    """A tree cannot be expressed as YAML."""


class _Emitter:
    """Tracks the output column and whitespace state while writing YAML."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self.column = 0
        self.whitespace = True

    def _put(self, text: str) -> None:
        self._parts.append(text)
        self.column += len(text)

    def indicator(self, text: str, need_whitespace: bool, is_whitespace: bool = False) -> None:
        if need_whitespace and not self.whitespace:
            self._put(" ")
        self._put(text)
        self.whitespace = is_whitespace

    def raw(self, text: str) -> None:
        self._put(text)
        self.whitespace = False

    def newline(self, indent: int) -> None:
        self._parts.append("\n")
        self.column = 0
        self._put(" " * indent)
        self.whitespace = True

    def pad(self, indent: int) -> None:
        self._put(" " * max(indent - self.column, 0))
        self.whitespace = True

    def getvalue(self) -> str:
        return "".join(self._parts)


def _plain_allowed(text: str) -> bool:
    if not text:
        return False
    if text.startswith(("---", "...")):
        return False
    if text[0] == " " or text[-1] == " ":
        return False
    if text[0] in _LEADING_INDICATORS:
        return False
    if text[0] in "?:-" and (len(text) == 1 or text[1] == " "):
        return False
    for pos in range(1, len(text)):
        ch = text[pos]
        if ch == ":" and (pos + 1 == len(text) or text[pos + 1] == " "):
            return False
        if ch == "#" and text[pos - 1] == " ":
            return False
    return True


def _double_quoted(e: _Emitter, text: bytes, indent: int) -> None:
    e.indicator('"', True)
    spaces = False
    n = len(text)
    for pos, byte in enumerate(text):
        if byte in _ESCAPES or not 0x20 <= byte <= 0x7E:
            e.raw("\\" + (_ESCAPES.get(byte) or f"x{byte:02X}"))
            spaces = False
        elif byte == 0x20:
            if not spaces and e.column > _BEST_WIDTH and 0 < pos < n - 1:
                e.newline(indent)
                if text[pos + 1] == 0x20:
                    e.raw("\\")
            else:
                e.raw(" ")
            spaces = True
        else:
            e.raw(chr(byte))
            spaces = False
    e.indicator('"', False)


def _key(e: _Emitter, name: str, indent: int, inline: bool) -> None:
    if inline:
        e.pad(indent)
    else:
        e.newline(indent)
    if _plain_allowed(name):
        e.indicator(name, True)
    elif all(0x20 <= ord(c) <= 0x7E for c in name):
        e.indicator("'" + name.replace("'", "''") + "'", True)
    else:
        _double_quoted(e, name.encode("utf-8"), indent)
    e.indicator(":", False)


def _int_sequence(
    e: _Emitter,
    markers: list[Marker],
    data: bytes,
    seq_offset: int,
    width: int,
    indent: int,
) -> None:
    tag = _INT_TAGS.get(width)
    if tag is None:
        raise YamlEmitError(f"Invalid width {width}")
    if len(data) % width:
        raise YamlEmitError(f"{len(data)} bytes are not a multiple of width {width}")
    if width != 4:
        e.indicator(tag, True)
    e.indicator("[", True, True)
    phandle_offsets = {
        m.offset for m in markers if m.type == MarkerType.REF_PHANDLE
    }
    for index, off in enumerate(range(0, len(data), width)):
        if index:
            e.indicator(",", False)
        if e.column > _BEST_WIDTH:
            e.newline(indent)
        value = int.from_bytes(data[off : off + width], "big")
        if width == 4 and seq_offset + off in phandle_offsets:
            e.indicator("!phandle", True)
        e.indicator(f"0x{value:x}", True)
    e.indicator("]", False)


def _string_item(e: _Emitter, data: bytes, indent: int) -> None:
    if not data or data[-1] != 0:
        raise YamlEmitError("string value is not NUL-terminated")
    if any(b >= 0x80 for b in data):
        raise YamlEmitError("string value is not 7-bit ASCII")
    _double_quoted(e, data[:-1], indent)


def _property(e: _Emitter, prop: Property, indent: int) -> None:
    val = bytes(prop.val.val)
    if not val:
        e.indicator("true", True)
        return
    markers = prop.val.markers
    if not markers:
        raise YamlEmitError(f"No markers present in property '{prop.name}' value")

    flow_indent = indent + 2
    e.indicator("[", True, True)
    remaining = len(val)
    first = True
    for m in markers:
        if not m.type.is_type:
            continue
        chunk_len = prop.val.type_marker_length(m) or remaining
        if chunk_len <= 0:
            raise YamlEmitError(f"empty value chunk in property '{prop.name}'")
        remaining -= chunk_len
        data = val[m.offset : m.offset + chunk_len]

        if not first:
            e.indicator(",", False)
        first = False
        if e.column > _BEST_WIDTH:
            e.newline(flow_indent)

        if m.type == MarkerType.TYPE_STRING:
            _string_item(e, data, flow_indent)
        else:
            width = _WIDTHS.get(m.type, 1)
            _int_sequence(e, markers, data, m.offset, width, flow_indent + 2)
    e.indicator("]", False)


def _mapping(e: _Emitter, node: Node, indent: int, inline: bool) -> None:
    props = list(node.live_properties())
    children = list(node.live_children())
    if not props and not children:
        e.indicator("{", True, True)
        e.indicator("}", False)
        return
    first = True
    for prop in props:
        _key(e, prop.name, indent, inline and first)
        first = False
        _property(e, prop, indent)
    for child in children:
        _key(e, child.name or "", indent, inline and first)
        first = False
        _mapping(e, child, indent + 2, False)


def dt_to_yaml(dti: DeviceTreeInfo) -> str:
    """Render the tree as a YAML document: a list holding the root mapping."""
    e = _Emitter()
    e.indicator("---", True)
    if dti.dt.deleted:
        e.indicator("[", True, True)
        e.indicator("]", False)
    else:
        e.newline(0)
        e.indicator("-", True)
        _mapping(e, dti.dt, 2, True)
    e.newline(0)
    e.indicator("...", True)
    e.newline(0)
    return e.getvalue()