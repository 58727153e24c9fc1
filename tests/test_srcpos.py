import io

import pytest

from devtreekit.srcpos import (
    MAX_SRCFILE_DEPTH,
    SourceError,
    SourceFile,
    SourcePosition,
    SourceTracker,
    format_error,
)


@pytest.fixture
def tree_files(tmp_path):
    main = tmp_path / "main.dts"
    main.write_text("/dts-v1/;\n")
    inc_dir = tmp_path / "inc"
    inc_dir.mkdir()
    (inc_dir / "extra.dtsi").write_text("/ { };\n")
    (tmp_path / "local.dtsi").write_text("/ { };\n")
    return tmp_path


def test_push_and_pop_single_file(tree_files):
    tracker = SourceTracker()
    src = tracker.push(str(tree_files / "main.dts"))
    assert tracker.current is src
    assert src.name == str(tree_files / "main.dts")
    assert src.dir == str(tree_files)
    assert (src.lineno, src.colno) == (1, 1)
    assert tracker.pop() is False
    assert tracker.current is None
    assert src.f.closed


def test_nested_include_found_in_current_dir(tree_files):
    tracker = SourceTracker()
    outer = tracker.push(str(tree_files / "main.dts"))
    inner = tracker.push("local.dtsi")
    assert inner.name == str(tree_files / "local.dtsi")
    assert inner.prev is outer
    assert tracker.pop() is True
    assert tracker.current is outer
    assert tracker.pop() is False


def test_search_path_used_when_not_in_current_dir(tree_files):
    tracker = SourceTracker()
    tracker.add_search_path(str(tree_files / "inc"))
    tracker.push(str(tree_files / "main.dts"))
    inner = tracker.push("extra.dtsi")
    assert inner.name == str(tree_files / "inc" / "extra.dtsi")
    tracker.pop()
    tracker.pop()


def test_missing_file_raises(tree_files):
    tracker = SourceTracker()
    with pytest.raises(SourceError, match="Couldn't open"):
        tracker.push(str(tree_files / "absent.dts"))


def test_include_depth_limit(tree_files):
    tracker = SourceTracker()
    path = str(tree_files / "main.dts")
    for _ in range(MAX_SRCFILE_DEPTH):
        tracker.push(path)
        tracker.pop()
    with pytest.raises(SourceError, match="nested too deeply"):
        tracker.push(path)


def test_pop_without_file_raises():
    with pytest.raises(SourceError):
        SourceTracker().pop()


def test_relative_open_stdin_and_depfile(tmp_path):
    spaced = tmp_path / "my dir"
    spaced.mkdir()
    target = spaced / "a.dts"
    target.write_bytes(b"x")
    tracker = SourceTracker()
    tracker.depfile = io.StringIO()
    f, name = tracker.relative_open("-")
    assert name == "<stdin>"
    f2, name2 = tracker.relative_open(str(target))
    try:
        assert name2 == str(target)
        assert f2.read() == b"x"
    finally:
        f2.close()
    written = tracker.depfile.getvalue()
    assert written.startswith(" <stdin> ")
    assert "my\\ dir" in written


def test_update_tracks_lines_and_columns(tree_files):
    tracker = SourceTracker()
    tracker.push(str(tree_files / "main.dts"))
    first = tracker.update("abc")
    assert first.first_line == first.last_line
    assert first.last_column - first.first_column == len("abc")
    second = tracker.update("d\ne\n")
    assert second.first_column == first.last_column
    assert second.last_line == second.first_line + 2
    assert second.last_column == 1
    assert second.file is tracker.current
    tracker.pop()


def test_update_without_file_raises():
    with pytest.raises(SourceError):
        SourceTracker().update("x")


def test_copy_snapshots_file_state(tree_files):
    tracker = SourceTracker()
    tracker.push(str(tree_files / "main.dts"))
    pos = tracker.update("line\n")
    snap = pos.copy()
    before = snap.file.lineno
    tracker.update("\n\n")
    assert snap.file is not pos.file
    assert snap.file.name == pos.file.name
    assert snap.file.lineno == before
    assert pos.file.lineno == before + 2
    assert snap == SourcePosition(
        pos.first_line, pos.first_column, pos.last_line, pos.last_column, snap.file
    )
    tracker.pop()


def test_copy_of_chain_rejected():
    pos = SourcePosition(1, 1, 1, 1).extend(SourcePosition(2, 1, 2, 1))
    with pytest.raises(ValueError):
        pos.copy()


def test_extend_appends_at_end():
    a = SourcePosition(1, 1, 1, 2)
    b = SourcePosition(2, 1, 2, 2)
    c = SourcePosition(3, 1, 3, 2)
    head = a.extend(b).extend(c)
    assert head is a
    assert a.next is b and b.next is c and c.next is None


def test_str_forms():
    f = SourceFile(name="x.dts")
    assert str(SourcePosition(1, 2, 3, 4, f)) == "x.dts:1.2-3.4"
    same_line = str(SourcePosition(5, 2, 5, 9, SourceFile(name="input")))
    assert same_line.startswith("input:5.2-")
    assert same_line.count(".") == 1
    point = str(SourcePosition(5, 2, 5, 2, SourceFile(name="input")))
    assert "-" not in point
    assert str(SourcePosition(5, 2, 5, 2)).startswith("<no-file>:")


def test_string_first_and_last():
    pos = SourcePosition(3, 4, 5, 6, SourceFile(name="f.dts"))
    assert pos.string_first(1).endswith(":3")
    assert pos.string_last(1).endswith(":5")
    assert pos.string_first(2) == "f.dts:3:4-5:6"
    assert pos.string_first(2) == pos.string_last(2)


def test_string_comment_chain_and_missing_names():
    a = SourcePosition(1, 1, 2, 1, SourceFile(name="a.dts"))
    b = SourcePosition(7, 1, 8, 1, SourceFile(name=None))
    a.extend(b)
    text = a.string_first(1)
    parts = text.split(", ")
    assert len(parts) == 2
    assert parts[0].startswith("a.dts:")
    assert parts[1].startswith("<no-filename>:")
    assert SourcePosition(1, 1, 1, 1).string_last(1).startswith("<no-file>:")


def test_shorten_to_initial_path(tree_files):
    tracker = SourceTracker()
    assert tracker.shorten_to_initial_path("dir/a.dts") is None
    tracker.push(str(tree_files / "main.dts"))
    tracker.set_line("dir/sub/main.dts", 1)
    assert tracker.shorten_to_initial_path("dir/other/x.dtsi") == "../other/x.dtsi"
    assert tracker.shorten_to_initial_path("elsewhere.dtsi") is None
    tracker.pop()


def test_string_first_uses_shortener(tree_files):
    tracker = SourceTracker()
    tracker.push(str(tree_files / "main.dts"))
    pos = SourcePosition(2, 1, 2, 1, SourceFile(name=str(tree_files / "inc" / "x.dtsi")))
    shortened = pos.string_first(1, tracker.shorten_to_initial_path)
    assert not shortened.startswith(str(tree_files))
    assert shortened.endswith("x.dtsi:2")
    assert pos.string_first(2, tracker.shorten_to_initial_path).startswith(str(tree_files))
    tracker.pop()


def test_set_line_changes_current_file(tree_files):
    tracker = SourceTracker()
    src = tracker.push(str(tree_files / "main.dts"))
    tracker.set_line("generated.dts", 42)
    assert src.name == "generated.dts"
    assert src.lineno == 42
    pos = tracker.update("x")
    assert pos.first_line == 42
    tracker.pop()


def test_format_error():
    pos = SourcePosition(1, 1, 1, 3, SourceFile(name="input"))
    text = format_error(pos, "ERROR", "bad thing")
    assert text.startswith("ERROR: ")
    assert str(pos) in text
    assert text.endswith(" bad thing")