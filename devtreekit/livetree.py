"""In-memory device tree: nodes, properties, labels and the operations on them."""

from __future__ import annotations

import itertools
import warnings
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Iterator, Optional

from devtreekit.srcpos import SourcePosition
from devtreekit.util import get_escape_char, join_path

__all__ = [
    "PHANDLE_LEGACY",
    "PHANDLE_EPAPR",
    "PHANDLE_BOTH",
    "TreeError",
    "MarkerType",
    "Marker",
    "Data",
    "Label",
    "Property",
    "Node",
    "ReserveEntry",
    "DeviceTreeInfo",
    "live_labels",
    "add_label",
    "delete_labels",
    "build_property",
    "build_property_delete",
    "build_node",
    "build_node_delete",
    "merge_nodes",
    "add_orphan_node",
    "propval_cell",
    "propval_cell_n",
    "phandle_is_valid",
    "get_property_by_label",
    "get_marker_label",
    "get_node_by_path",
    "get_node_by_label",
    "get_node_by_phandle",
    "get_node_by_ref",
    "guess_boot_cpuid",
]

PHANDLE_LEGACY = 0x1
PHANDLE_EPAPR = 0x2
PHANDLE_BOTH = 0x3

_CELL_SIZE = 4
_U32_MASK = 0xFFFFFFFF

_orphan_fragments = itertools.count()


class TreeError(Exception):
    """A tree operation cannot be carried out."""


class MarkerType(IntEnum):
    """Kinds of marker placed inside property data."""

    TYPE_NONE = 0
    REF_PATH = 1
    REF_PHANDLE = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8

    @property
    def is_type(self) -> bool:
        """True for markers that describe the type of the data that follows."""
        return self >= MarkerType.TYPE_UINT8


@dataclass(eq=False)
class Marker:
    """A marker at byte *offset* of a property value."""

    offset: int
    type: MarkerType
    ref: Optional[str] = None


@dataclass(eq=False)
class Data:
    """A property value: raw bytes plus the markers placed in them."""

    val: bytearray = field(default_factory=bytearray)
    markers: list[Marker] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.val)

    def add_marker(self, type: MarkerType, ref: Optional[str] = None) -> "Data":
        """Place a marker at the current end of the data."""
        self.markers.append(Marker(len(self.val), MarkerType(type), ref))
        return self

    def append_data(self, data: bytes) -> "Data":
        """Append raw bytes."""
        self.val.extend(data)
        return self

    def append_integer(self, value: int, bits: int) -> "Data":
        """Append *value* as a big-endian integer of *bits* bits."""
        if bits not in (8, 16, 32, 64):
            raise TreeError(f"invalid literal size {bits}")
        mask = (1 << bits) - 1
        self.val.extend((value & mask).to_bytes(bits // 8, "big"))
        return self

    def append_cell(self, value: int) -> "Data":
        """Append one 32-bit cell."""
        return self.append_integer(value, 32)

    def markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        """Yield the markers of the given type, in order."""
        return (m for m in self.markers if m.type == type)

    def next_type_marker(self, start: int = 0) -> Optional[Marker]:
        """Return the first type marker at or after position *start* of the marker list."""
        return next((m for m in self.markers[start:] if m.type.is_type), None)

    def type_marker_length(self, marker: Marker) -> int:
        """Length covered by *marker* up to the next type marker, or 0 if none follows."""
        index = next(
            (pos for pos, m in enumerate(self.markers) if m is marker), None
        )
        if index is None:
            raise TreeError("marker does not belong to this data")
        following = self.next_type_marker(index + 1)
        if following is None:
            return 0
        return following.offset - marker.offset


@dataclass(eq=False)
class Label:
    """A label attached to a node, property or reserve entry."""

    label: str
    deleted: bool = False


def live_labels(labels: Iterable[Label]) -> Iterator[Label]:
    """Yield the labels that have not been deleted."""
    return (lab for lab in labels if not lab.deleted)


def add_label(labels: list[Label], label: str) -> None:
    """Add *label* at the front of *labels*, or revive it if already present."""
    for existing in labels:
        if existing.label == label:
            existing.deleted = False
            return
    labels.insert(0, Label(label))


def delete_labels(labels: list[Label]) -> None:
    """Mark every label in *labels* as deleted."""
    for lab in labels:
        lab.deleted = True


def _copy_pos(srcpos: Optional[SourcePosition]) -> Optional[SourcePosition]:
    return srcpos.copy() if srcpos is not None else None


@dataclass(eq=False)
class Property:
    """A named property with its value."""

    name: str
    val: Data = field(default_factory=Data)
    deleted: bool = False
    labels: list[Label] = field(default_factory=list)
    srcpos: Optional[SourcePosition] = None

    def delete(self) -> None:
        """Mark the property and its labels deleted."""
        self.deleted = True
        delete_labels(self.labels)


@dataclass(eq=False)
class Node:
    """A tree node with its properties and child nodes."""

    name: Optional[str] = None
    properties: list[Property] = field(default_factory=list)
    children: list["Node"] = field(default_factory=list)
    parent: Optional["Node"] = field(default=None, repr=False)
    labels: list[Label] = field(default_factory=list)
    phandle: int = 0
    deleted: bool = False
    omit_if_unused: bool = False
    is_referenced: bool = False
    srcpos: Optional[SourcePosition] = None

    def live_properties(self) -> Iterator[Property]:
        """Yield the properties that have not been deleted."""
        return (p for p in self.properties if not p.deleted)

    def live_children(self) -> Iterator["Node"]:
        """Yield the child nodes that have not been deleted."""
        return (c for c in self.children if not c.deleted)

    def fullpath(self) -> str:
        """Path of the node from the root, the root being ``/``."""
        if self.parent is None:
            return "/"
        return join_path(self.parent.fullpath(), self.name or "")

    def unitname(self) -> str:
        """The part of the name after ``@``, or the empty string."""
        return (self.name or "").partition("@")[2]

    def add_property(self, prop: Property) -> None:
        """Append *prop* to the node's properties."""
        self.properties.append(prop)

    def delete_property_by_name(self, name: str) -> None:
        """Delete the first property called *name*, if any."""
        for prop in self.properties:
            if prop.name == name:
                prop.delete()
                return

    def add_child(self, child: "Node") -> None:
        """Append *child* to the node's children."""
        child.parent = self
        self.children.append(child)

    def delete_node_by_name(self, name: str) -> None:
        """Delete the first child called *name*, if any."""
        for child in self.children:
            if child.name == name:
                child.delete()
                return

    def delete(self) -> None:
        """Mark the node, its subtree, properties and labels deleted."""
        self.deleted = True
        for child in list(self.live_children()):
            child.delete()
        for prop in list(self.live_properties()):
            prop.delete()
        delete_labels(self.labels)

    def get_property(self, name: str) -> Optional[Property]:
        """Return the live property called *name*, or None."""
        return next((p for p in self.live_properties() if p.name == name), None)

    def get_subnode(self, name: str) -> Optional["Node"]:
        """Return the live child called *name*, or None."""
        return next((c for c in self.live_children() if c.name == name), None)

    def append_to_property(self, name: str, data: bytes, type: MarkerType) -> None:
        """Append typed *data* to property *name*, creating it if needed."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val.add_marker(type, name).append_data(data)
        else:
            d = Data().add_marker(type, name).append_data(data)
            self.add_property(build_property(name, d, None))


@dataclass(eq=False)
class ReserveEntry:
    """A memory reservation: start address and size."""

    address: int
    size: int
    labels: list[Label] = field(default_factory=list)


def build_property(
    name: str, val: Data, srcpos: Optional[SourcePosition] = None
) -> Property:
    """Create a property holding *val*."""
    return Property(name=name, val=val, srcpos=_copy_pos(srcpos))


def build_property_delete(name: str) -> Property:
    """Create a property that, when merged, deletes the property of that name."""
    return Property(name=name, deleted=True)


def build_node(
    properties: Iterable[Property] = (),
    children: Iterable[Node] = (),
    srcpos: Optional[SourcePosition] = None,
) -> Node:
    """Create an unnamed node holding *properties* and *children*."""
    node = Node(
        properties=list(properties), children=list(children), srcpos=_copy_pos(srcpos)
    )
    for child in node.children:
        child.parent = node
    return node


def build_node_delete(srcpos: Optional[SourcePosition] = None) -> Node:
    """Create a node that, when merged, deletes the node of that name."""
    return Node(deleted=True, srcpos=_copy_pos(srcpos))


def _name_node(node: Node, name: str) -> Node:
    if node.name is not None:
        raise TreeError(f"node is already named {node.name!r}")
    node.name = name
    return node


def merge_nodes(old_node: Node, new_node: Node) -> Node:
    """Merge *new_node* into *old_node*; new values override old ones."""
    old_node.deleted = False

    for lab in new_node.labels:
        add_label(old_node.labels, lab.label)

    new_props, new_node.properties = new_node.properties, []
    for new_prop in new_props:
        if new_prop.deleted:
            old_node.delete_property_by_name(new_prop.name)
            continue
        old_prop = next(
            (p for p in old_node.properties if p.name == new_prop.name), None
        )
        if old_prop is None:
            old_node.add_property(new_prop)
            continue
        for lab in new_prop.labels:
            add_label(old_prop.labels, lab.label)
        old_prop.val = new_prop.val
        old_prop.deleted = False
        old_prop.srcpos = new_prop.srcpos

    new_children, new_node.children = new_node.children, []
    for new_child in new_children:
        new_child.parent = None
        if new_child.deleted:
            old_node.delete_node_by_name(new_child.name)
            continue
        old_child = next(
            (c for c in old_node.children if c.name == new_child.name), None
        )
        if old_child is None:
            old_node.add_child(new_child)
        else:
            merge_nodes(old_child, new_child)

    if old_node.srcpos is None:
        old_node.srcpos = new_node.srcpos
    elif new_node.srcpos is not None:
        old_node.srcpos.extend(new_node.srcpos)
    return old_node


def add_orphan_node(dt: Node, new_node: Node, ref: str) -> Node:
    """Wrap *new_node* in an overlay fragment targeting *ref* and add it to *dt*."""
    d = Data()
    if ref.startswith("/"):
        d.add_marker(MarkerType.TYPE_STRING, ref)
        d.append_data(ref.encode("utf-8") + b"\0")
        prop = build_property("target-path", d, None)
    else:
        d.add_marker(MarkerType.REF_PHANDLE, ref)
        d.append_integer(0xFFFFFFFF, 32)
        prop = build_property("target", d, None)

    name = f"fragment@{next(_orphan_fragments)}"
    _name_node(new_node, "__overlay__")
    fragment = _name_node(build_node([prop], [new_node], None), name)
    dt.add_child(fragment)
    return dt


def propval_cell(prop: Property) -> int:
    """Return the value of a property that holds exactly one cell."""
    if len(prop.val) != _CELL_SIZE:
        raise TreeError(f"property {prop.name!r} is not a single cell")
    return int.from_bytes(prop.val.val, "big")


def propval_cell_n(prop: Property, n: int) -> int:
    """Return cell *n* of a property's value."""
    if len(prop.val) // _CELL_SIZE <= n or n < 0:
        raise TreeError(f"property {prop.name!r} has no cell {n}")
    start = n * _CELL_SIZE
    return int.from_bytes(prop.val.val[start : start + _CELL_SIZE], "big")


def phandle_is_valid(phandle: int) -> bool:
    """A phandle is valid unless it is 0 or all ones."""
    return phandle != 0 and phandle != _U32_MASK


def get_property_by_label(
    tree: Node, label: str
) -> tuple[Optional[Property], Optional[Node]]:
    """Find the property carrying *label*; return it and its node, or (None, None)."""
    for prop in tree.live_properties():
        if any(lab.label == label for lab in live_labels(prop.labels)):
            return prop, tree
    for child in tree.live_children():
        found = get_property_by_label(child, label)
        if found[0] is not None:
            return found
    return None, None


def get_marker_label(
    tree: Node, label: str
) -> tuple[Optional[Marker], Optional[Node], Optional[Property]]:
    """Find a label placed inside a value; return the marker, node and property."""
    for prop in tree.live_properties():
        for marker in prop.val.markers_of_type(MarkerType.LABEL):
            if marker.ref == label:
                return marker, tree, prop
    for child in tree.live_children():
        found = get_marker_label(child, label)
        if found[0] is not None:
            return found
    return None, None, None


def get_node_by_path(tree: Node, path: Optional[str]) -> Optional[Node]:
    """Follow *path* below *tree*; an empty path names *tree* itself."""
    if not path:
        return None if tree.deleted else tree
    path = path.lstrip("/")
    head, slash, rest = path.partition("/")
    for child in tree.live_children():
        if slash and head == child.name:
            return get_node_by_path(child, rest)
        if not slash and path == child.name:
            return child
    return None


def get_node_by_label(tree: Node, label: str) -> Optional[Node]:
    """Find the node carrying *label*."""
    if not label:
        raise ValueError("label must not be empty")
    if any(lab.label == label for lab in live_labels(tree.labels)):
        return tree
    for child in tree.live_children():
        node = get_node_by_label(child, label)
        if node is not None:
            return node
    return None


def get_node_by_phandle(tree: Node, phandle: int) -> Optional[Node]:
    """Find the node with *phandle*; invalid phandles find nothing."""
    if not phandle_is_valid(phandle):
        return None
    if tree.phandle == phandle:
        return None if tree.deleted else tree
    for child in tree.live_children():
        node = get_node_by_phandle(child, phandle)
        if node is not None:
            return node
    return None


def get_node_by_ref(tree: Node, ref: str) -> Optional[Node]:
    """Resolve a reference: a path, a label, or ``label/path``."""
    if ref == "/":
        return tree
    if ref.startswith("/"):
        return get_node_by_path(tree, ref)
    label, slash, path = ref.partition("/")
    target = get_node_by_label(tree, label)
    if target is None:
        return None
    if slash:
        return get_node_by_path(target, path)
    return target


def guess_boot_cpuid(tree: Node) -> int:
    """Take the boot CPU id from the ``reg`` of the first node under ``/cpus``."""
    cpus = get_node_by_path(tree, "/cpus")
    if cpus is None or not cpus.children:
        return 0
    reg = cpus.children[0].get_property("reg")
    if reg is None or len(reg.val) != _CELL_SIZE:
        return 0
    return propval_cell(reg)


def _escaped_string_data(s: str) -> Data:
    d = Data().add_marker(MarkerType.TYPE_STRING)
    out = bytearray()
    i = 0
    while i < len(s):
        c = s[i]
        i += 1
        if c == "\\":
            c, i = get_escape_char(s, i)
            out.append(ord(c) & 0xFF)
        else:
            out.extend(c.encode("utf-8"))
    out.append(0)
    return d.append_data(bytes(out))


def _build_and_name_child_node(parent: Node, name: str) -> Node:
    node = _name_node(build_node(), name)
    parent.add_child(node)
    return node


def _build_root_node(dt: Node, name: str) -> Node:
    return dt.get_subnode(name) or _build_and_name_child_node(dt, name)


def _phandle_refs(node: Node) -> Iterator[tuple[Property, Marker]]:
    for prop in node.live_properties():
        for marker in prop.val.markers_of_type(MarkerType.REF_PHANDLE):
            yield prop, marker


@dataclass(eq=False)
class DeviceTreeInfo:
    """A whole device tree: root node, reserve map and header information."""

    dt: Node
    reservelist: list[ReserveEntry] = field(default_factory=list)
    dtsflags: int = 0
    boot_cpuid_phys: int = 0
    phandle_format: int = PHANDLE_EPAPR
    _next_phandle: int = field(default=1, init=False, repr=False)

    def _add_phandle_property(self, node: Node, name: str, fmt: int) -> None:
        if not (self.phandle_format & fmt):
            return
        if node.get_property(name) is not None:
            return
        d = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(node.phandle)
        node.add_property(build_property(name, d, None))

    def get_node_phandle(self, node: Node) -> int:
        """Return the node's phandle, allocating a free one if it has none."""
        if phandle_is_valid(node.phandle):
            return node.phandle
        while get_node_by_phandle(self.dt, self._next_phandle) is not None:
            self._next_phandle += 1
        node.phandle = self._next_phandle
        self._add_phandle_property(node, "linux,phandle", PHANDLE_LEGACY)
        self._add_phandle_property(node, "phandle", PHANDLE_EPAPR)
        return node.phandle

    def sort(self) -> None:
        """Sort the reserve map by address and size, and the tree by name."""
        self.reservelist.sort(key=lambda r: (r.address, r.size))
        self._sort_node(self.dt)

    def _sort_node(self, node: Node) -> None:
        node.properties.sort(key=lambda p: p.name)
        node.children.sort(key=lambda c: c.name or "")
        for child in node.children:
            self._sort_node(child)

    def _any_label_tree(self, node: Node) -> bool:
        return bool(node.labels) or any(
            self._any_label_tree(c) for c in node.live_children()
        )

    def _label_tree_internal(self, an: Node, node: Node, allocph: bool) -> None:
        if node.labels:
            for lab in live_labels(node.labels):
                if an.get_property(lab.label) is not None:
                    warnings.warn(
                        f"label {lab.label} already exists in /{an.name}",
                        stacklevel=3,
                    )
                    continue
                an.add_property(
                    build_property(lab.label, _escaped_string_data(node.fullpath()))
                )
            if allocph:
                self.get_node_phandle(node)
        for child in node.live_children():
            self._label_tree_internal(an, child, allocph)

    def generate_label_tree(self, name: str, allocph: bool) -> None:
        """Add a node *name* mapping every node label to the node's path."""
        if not self._any_label_tree(self.dt):
            return
        self._label_tree_internal(_build_root_node(self.dt, name), self.dt, allocph)

    def _any_fixup_tree(self, node: Node, local: bool) -> bool:
        for _prop, marker in _phandle_refs(node):
            if (get_node_by_ref(self.dt, marker.ref) is not None) == local:
                return True
        return any(self._any_fixup_tree(c, local) for c in node.live_children())

    @staticmethod
    def _add_fixup_entry(fn: Node, node: Node, prop: Property, marker: Marker) -> None:
        if "/" in marker.ref:
            raise TreeError(
                f"Can't generate fixup for reference to path &{{{marker.ref}}}"
            )
        fullpath = node.fullpath()
        if ":" in fullpath or ":" in prop.name:
            raise TreeError("arguments should not contain ':'")
        entry = f"{fullpath}:{prop.name}:{marker.offset}"
        fn.append_to_property(
            marker.ref, entry.encode("utf-8") + b"\0", MarkerType.TYPE_STRING
        )

    def _fixups_internal(self, fn: Node, node: Node) -> None:
        for prop, marker in _phandle_refs(node):
            if get_node_by_ref(self.dt, marker.ref) is None:
                self._add_fixup_entry(fn, node, prop, marker)
        for child in node.live_children():
            self._fixups_internal(fn, child)

    def generate_fixups_tree(self, name: str) -> None:
        """Add a node *name* listing every phandle reference that cannot be resolved."""
        old = self.dt.get_subnode(name)
        if old is not None:
            old.deleted = True
        if not self._any_fixup_tree(self.dt, local=False):
            return
        self._fixups_internal(_build_and_name_child_node(self.dt, name), self.dt)

    @staticmethod
    def _add_local_fixup_entry(
        lfn: Node, node: Node, prop: Property, marker: Marker
    ) -> None:
        names = []
        walk: Optional[Node] = node
        while walk is not None:
            names.append(walk.name or "")
            walk = walk.parent
        names.reverse()
        target = lfn
        for component in names[1:]:
            target = _build_root_node(target, component)
        target.append_to_property(
            prop.name, marker.offset.to_bytes(4, "big"), MarkerType.TYPE_UINT32
        )

    def _local_fixups_internal(self, lfn: Node, node: Node) -> None:
        for prop, marker in _phandle_refs(node):
            if get_node_by_ref(self.dt, marker.ref) is not None:
                self._add_local_fixup_entry(lfn, node, prop, marker)
        for child in node.live_children():
            self._local_fixups_internal(lfn, child)

    def generate_local_fixups_tree(self, name: str) -> None:
        """Add a node *name* recording where resolved phandle references sit."""
        old = self.dt.get_subnode(name)
        if old is not None:
            old.deleted = True
        if not self._any_fixup_tree(self.dt, local=True):
            return
        self._local_fixups_internal(
            _build_and_name_child_node(self.dt, name), self.dt
        )