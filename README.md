# devtreekit

Work with device trees in pure Python: build a tree in memory, merge
overlaid nodes, look nodes up, generate the overlay support nodes, and
write the tree out as device tree source or as YAML.

## Modules

- **`devtreekit.livetree`**: the in-memory tree.
  - `Node`, `Property`, `Label`, `ReserveEntry` and `DeviceTreeInfo` (root
    node, reserve map, boot CPU id and phandle format).
  - `Data` holds a property value as bytes plus `Marker`s, each of a
    `MarkerType`. Its methods `add_marker`, `append_data`,
    `append_integer`, `append_cell` and `type_marker_length` build and
    inspect values.
  - `build_node`, `build_property`, `build_node_delete`,
    `build_property_delete`, `merge_nodes`, `add_orphan_node`,
    `add_label` and `delete_labels` construct and combine trees.
  - Lookups: `get_node_by_path`, `get_node_by_label`,
    `get_node_by_phandle`, `get_node_by_ref`, `get_property_by_label`,
    `get_marker_label`, `propval_cell`, `propval_cell_n` and
    `guess_boot_cpuid`.
  - `DeviceTreeInfo.sort()` orders the reserve map and the tree.
    `generate_label_tree`, `generate_fixups_tree` and
    `generate_local_fixups_tree` add the symbol and fixup nodes used by
    overlays. `get_node_phandle` hands out free phandles.
  - Failures raise `TreeError`. A label that already exists in the symbol
    node is reported with `warnings.warn`.
- **`devtreekit.treesource`**: `dt_to_source(dti, annotate)` renders a
  whole tree, reserve map included, as source text. `format_property_value`,
  `format_string_value`, `format_int_values` and `guess_value_type` are
  the pieces it is built from. Values that carry no type marker have
  their type guessed.
- **`devtreekit.yamltree`**: `dt_to_yaml(dti)` renders the tree as a YAML
  document. Values it cannot express raise `YamlEmitError`.
- **`devtreekit.srcpos`**: `SourceTracker` keeps the stack of open source
  files and the include search path. `SourcePosition` describes a span
  and formats it for messages and annotation comments. `format_error`
  builds a diagnostic line. Failures raise `SourceError`.
- **`devtreekit.util`**: helpers.
  - `get_escape_char` decodes escape sequences.
  - `join_path` and `escape_path` handle paths.
  - `read_blob` and `write_blob` read and write blob files, with `-` for
    stdin and stdout.
  - `decode_type` parses type format strings such as `hx`.
  - `format_data` renders property bytes in readable form.
  - `is_printable_string` tests whether bytes are printable strings.
  - `format_usage` builds usage text from `Option` entries.

## Example

```python
from devtreekit.livetree import (
    Data, DeviceTreeInfo, MarkerType, build_node, build_property,
)
from devtreekit.treesource import dt_to_source
from devtreekit.yamltree import dt_to_yaml

value = Data().add_marker(MarkerType.TYPE_UINT32, None).append_cell(1)
root = build_node([build_property("#address-cells", value, None)], [], None)
root.name = ""
info = DeviceTreeInfo(dt=root)

print(dt_to_source(info, 0))
# /dts-v1/;
#
# / {
# 	#address-cells = <0x01>;
# };

print(dt_to_yaml(info))
```

Passing a non-zero `annotate` level to `dt_to_source` adds comments that
name the source position of each node and property.

## What it does not do

- There is no parser for device tree source. A tree is built through the
  functions in `devtreekit.livetree`.
- Flattened blobs (`.dtb`) cannot be encoded or decoded. `read_blob` and
  `write_blob` only move bytes to and from files. `write_blob` takes the
  length to write from the blob's header.
- The package installs no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```