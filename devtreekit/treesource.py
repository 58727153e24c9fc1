"""Writing a live device tree back out as device tree source text."""

from __future__ import annotations

from typing import Optional

from devtreekit.livetree import (
    DeviceTreeInfo,
    Marker,
    MarkerType,
    Node,
    Property,
    live_labels,
)
from devtreekit.srcpos import SourcePosition

__all__ = [
    "guess_value_type",
    "format_string_value",
    "format_int_values",
    "format_property_value",
    "dt_to_source",
]

_CELL_SIZE = 4
_STRING_CONTROL = frozenset(b"\a\b\t\n\v\f\r")

_DELIM_START = {
    MarkerType.TYPE_UINT8: "[",
    MarkerType.TYPE_UINT16: "/bits/ 16 <",
    MarkerType.TYPE_UINT32: "<",
    MarkerType.TYPE_UINT64: "/bits/ 64 <",
    MarkerType.TYPE_STRING: "",
}
_DELIM_END = {
    MarkerType.TYPE_UINT8: "]",
    MarkerType.TYPE_UINT16: ">",
    MarkerType.TYPE_UINT32: ">",
    MarkerType.TYPE_UINT64: ">",
    MarkerType.TYPE_STRING: "",
}
_WIDTHS = {
    MarkerType.TYPE_UINT16: 2,
    MarkerType.TYPE_UINT32: 4,
    MarkerType.TYPE_UINT64: 8,
}
_STRING_ESCAPES = {
    0x07: "\\a",
    0x08: "\\b",
    0x09: "\\t",
    0x0A: "\\n",
    0x0B: "\\v",
    0x0C: "\\f",
    0x0D: "\\r",
    0x5C: "\\\\",
    0x22: '\\"',
    0x00: "\\0",
}


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _isstring(byte: int) -> bool:
    return _isprint(byte) or byte == 0 or byte in _STRING_CONTROL


def _add_string_markers(prop: Property) -> None:
    val = prop.val.val
    length = len(val)
    pos = val.find(0) + 1
    while 0 < pos < length:
        prop.val.markers.append(Marker(pos, MarkerType.TYPE_STRING))
        end = val.find(0, pos)
        if end < 0:
            break
        pos = end + 1


def guess_value_type(prop: Property) -> MarkerType:
    """Guess how an untyped property value should be written.

    A value guessed to be a list of several strings gets string markers
    added at the start of each string after the first.
    """
    val = prop.val.val
    length = len(val)
    nnotstring = sum(1 for b in val if not _isstring(b))
    nnul = val.count(0)
    labels = list(prop.val.markers_of_type(MarkerType.LABEL))
    nnotstringlbl = sum(
        1 for m in labels if m.offset > 0 and val[m.offset - 1] != 0
    )
    nnotcelllbl = sum(1 for m in labels if m.offset % _CELL_SIZE != 0)

    if (
        length > 0
        and val[-1] == 0
        and nnotstring == 0
        and nnul <= length - nnul
        and nnotstringlbl == 0
    ):
        if nnul > 1:
            _add_string_markers(prop)
        return MarkerType.TYPE_STRING
    if length % _CELL_SIZE == 0 and nnotcelllbl == 0:
        return MarkerType.TYPE_UINT32
    return MarkerType.TYPE_UINT8


def format_string_value(data: bytes) -> str:
    """Quote a NUL-terminated string value as it appears in source."""
    if not data:
        return ""
    if data[-1] != 0:
        raise ValueError("string value is not NUL-terminated")
    parts = ['"']
    for byte in data[:-1]:
        escaped = _STRING_ESCAPES.get(byte)
        if escaped is not None:
            parts.append(escaped)
        elif _isprint(byte):
            parts.append(chr(byte))
        else:
            parts.append(f"\\x{byte:02x}")
    parts.append('"')
    return "".join(parts)


def format_int_values(data: bytes, width: int) -> str:
    """Render *data* as space-separated big-endian integers of *width* bytes."""
    if width not in (1, 2, 4, 8):
        raise ValueError(f"invalid integer width {width}")
    if len(data) % width:
        raise ValueError(f"{len(data)} bytes are not a multiple of width {width}")
    values = (
        int.from_bytes(data[off : off + width], "big")
        for off in range(0, len(data), width)
    )
    if width == 1:
        return " ".join(f"{v:02x}" for v in values)
    return " ".join(f"0x{v:02x}" for v in values)


def _annotation(pos: Optional[SourcePosition], level: int, first: bool) -> str:
    if not level:
        return ""
    if pos is None:
        return " /* <no-file>:<no-line> */" if level > 1 else ""
    text = pos.string_first(level) if first else pos.string_last(level)
    return f" /* {text} */"


def _type_marker_length(seq: list[Marker], index: int) -> int:
    marker = seq[index]
    following = next((m for m in seq[index + 1 :] if m.type.is_type), None)
    if following is None:
        return 0
    return following.offset - marker.offset


def format_property_value(prop: Property, annotate: int = 0) -> str:
    """Render what follows a property's name: its value, ``;`` and newline."""
    val = bytes(prop.val.val)
    length = len(val)
    if length == 0:
        return ";" + _annotation(prop.srcpos, annotate, True) + "\n"

    out = [" ="]
    if prop.val.next_type_marker() is None:
        guessed = guess_value_type(prop)
        seq = [Marker(0, guessed), *prop.val.markers]
    else:
        seq = list(prop.val.markers)

    emit_type = MarkerType.TYPE_NONE
    for index, m in enumerate(seq):
        nxt = seq[index + 1] if index + 1 < len(seq) else None
        chunk_len = (nxt.offset if nxt is not None else length) - m.offset
        data_len = _type_marker_length(seq, index) or (length - m.offset)
        chunk = val[m.offset : m.offset + chunk_len]

        if m.type.is_type:
            emit_type = m.type
            out.append(" " + _DELIM_START[emit_type])
        elif m.type == MarkerType.LABEL:
            out.append(f" {m.ref}:")

        if emit_type == MarkerType.TYPE_NONE or chunk_len == 0:
            continue

        if emit_type == MarkerType.TYPE_UINT32:
            phandle = next(
                (
                    r
                    for r in prop.val.markers_of_type(MarkerType.REF_PHANDLE)
                    if r.offset == m.offset
                ),
                None,
            )
            if phandle is not None:
                ref = phandle.ref or ""
                out.append(f"&{{{ref}}}" if ref.startswith("/") else f"&{ref}")
                if chunk_len > _CELL_SIZE:
                    out.append(" " + format_int_values(chunk[_CELL_SIZE:], _CELL_SIZE))
            else:
                out.append(format_int_values(chunk, _CELL_SIZE))
            if data_len > chunk_len:
                out.append(" ")
        elif emit_type in _WIDTHS:
            out.append(format_int_values(chunk, _WIDTHS[emit_type]))
        elif emit_type == MarkerType.TYPE_STRING:
            out.append(format_string_value(chunk))
        else:
            out.append(format_int_values(chunk, 1))

        if chunk_len == data_len:
            end = _DELIM_END.get(emit_type, "")
            out.append(end if m.offset + chunk_len == length else end + ",")
            emit_type = MarkerType.TYPE_NONE

    out.append(";")
    out.append(_annotation(prop.srcpos, annotate, True))
    out.append("\n")
    return "".join(out)


def _label_prefix(labels) -> str:
    return "".join(f"{lab.label}: " for lab in live_labels(labels))


def _write_node(out: list[str], node: Node, level: int, annotate: int) -> None:
    prefix = "\t" * level
    inner = "\t" * (level + 1)
    name = node.name if node.name else "/"
    out.append(f"{prefix}{_label_prefix(node.labels)}{name} {{")
    out.append(_annotation(node.srcpos, annotate, True))
    out.append("\n")

    for prop in node.live_properties():
        out.append(f"{inner}{_label_prefix(prop.labels)}{prop.name}")
        out.append(format_property_value(prop, annotate))
    for child in node.live_children():
        out.append("\n")
        _write_node(out, child, level + 1, annotate)

    out.append(f"{prefix}}};")
    out.append(_annotation(node.srcpos, annotate, False))
    out.append("\n")


def dt_to_source(dti: DeviceTreeInfo, annotate: int = 0) -> str:
    """Render a whole tree, reserve map included, as device tree source."""
    out = ["/dts-v1/;\n\n"]
    for entry in dti.reservelist:
        out.append(_label_prefix(entry.labels))
        out.append(f"/memreserve/\t0x{entry.address:016x} 0x{entry.size:016x};\n")
    _write_node(out, dti.dt, 0, annotate)
    return "".join(out)