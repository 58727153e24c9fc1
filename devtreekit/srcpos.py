"""Source file stack and source positions for the tree source reader."""

from __future__ import annotations

import copy as _copy
import sys
from dataclasses import dataclass, field
from typing import IO, Callable, Optional

from devtreekit.util import escape_path, join_path

__all__ = [
    "MAX_SRCFILE_DEPTH",
    "SourceError",
    "SourceFile",
    "SourcePosition",
    "SourceTracker",
    "format_error",
]

MAX_SRCFILE_DEPTH = 200

Shortener = Callable[[str], Optional[str]]


class SourceError(Exception):
    """A source file could not be opened, closed or tracked."""


@dataclass(eq=False)
class SourceFile:
    """State of one open source file: its name, directory and read position."""

    f: Optional[IO[bytes]] = field(default=None, repr=False)
    name: Optional[str] = None
    dir: Optional[str] = None
    lineno: int = 1
    colno: int = 1
    prev: Optional["SourceFile"] = field(default=None, repr=False)


@dataclass
class SourcePosition:
    """A span in a source file; positions may be chained through ``next``."""

    first_line: int = 0
    first_column: int = 0
    last_line: int = 0
    last_column: int = 0
    file: Optional[SourceFile] = None
    next: Optional["SourcePosition"] = None

    def copy(self) -> "SourcePosition":
        """Return a copy holding its own snapshot of the file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        return SourcePosition(
            self.first_line,
            self.first_column,
            self.last_line,
            self.last_column,
            _copy.copy(self.file) if self.file is not None else None,
            None,
        )

    def extend(self, tail: Optional["SourcePosition"]) -> "SourcePosition":
        """Append *tail* to the end of this chain and return the chain's head."""
        last = self
        while last.next is not None:
            last = last.next
        last.next = tail
        return self

    def __str__(self) -> str:
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (
                f"{fname}:{self.first_line}.{self.first_column}"
                f"-{self.last_line}.{self.last_column}"
            )
        if self.first_column != self.last_column:
            return f"{fname}:{self.first_line}.{self.first_column}-{self.last_column}"
        return f"{fname}:{self.first_line}.{self.first_column}"

    def _comment(self, first_line: bool, level: int, shorten: Optional[Shortener]) -> str:
        if self.file is None:
            fname = "<no-file>"
        elif not self.file.name:
            fname = "<no-filename>"
        elif level > 1 or shorten is None:
            fname = self.file.name
        else:
            fname = shorten(self.file.name) or self.file.name

        if level > 1:
            head = (
                f"{fname}:{self.first_line}:{self.first_column}"
                f"-{self.last_line}:{self.last_column}"
            )
        else:
            head = f"{fname}:{self.first_line if first_line else self.last_line}"

        if self.next is not None:
            return f"{head}, {self.next._comment(first_line, level, shorten)}"
        return head

    def string_first(self, level: int, shorten: Optional[Shortener] = None) -> str:
        """Describe the chain for an annotation comment, using first lines.

        At level 1 only the line is shown and file names are passed through
        *shorten* when it is given; higher levels show full spans.
        """
        return self._comment(True, level, shorten)

    def string_last(self, level: int, shorten: Optional[Shortener] = None) -> str:
        """Describe the chain for an annotation comment, using last lines."""
        return self._comment(False, level, shorten)


def format_error(pos: SourcePosition, prefix: str, message: str) -> str:
    """Build a diagnostic line naming *pos*."""
    return f"{prefix}: {pos} {message}"


def _dirname(path: str) -> Optional[str]:
    slash = path.rfind("/")
    return path[:slash] if slash >= 0 else None


class SourceTracker:
    """Tracks the stack of open source files, the search path and positions."""

    def __init__(self) -> None:
        self.search_paths: list[str] = []
        self.current: Optional[SourceFile] = None
        self.depfile: Optional[IO[str]] = None
        self._depth = 0
        self._initial_path: Optional[str] = None
        self._initial_pathlen = 0
        self._initial_cpp = True

    def add_search_path(self, dirname: str) -> None:
        """Add a directory at the end of the include search path."""
        self.search_paths.append(dirname)

    def _set_initial_path(self, fname: str) -> None:
        self._initial_path = fname
        self._initial_pathlen = fname.count("/")

    @staticmethod
    def _try_open(dirname: Optional[str], fname: str) -> tuple[IO[bytes], str]:
        if dirname is None or fname.startswith("/"):
            fullname = fname
        else:
            fullname = join_path(dirname, fname)
        return open(fullname, "rb"), fullname

    def _open_any_on_path(self, fname: str) -> tuple[IO[bytes], str]:
        cur_dir = self.current.dir if self.current is not None else None
        candidates = [cur_dir, *self.search_paths]
        last_error: Optional[OSError] = None
        for dirname in candidates:
            try:
                return self._try_open(dirname, fname)
            except OSError as exc:
                last_error = exc
        reason = last_error.strerror if last_error is not None else "not found"
        raise SourceError(f'Couldn\'t open "{fname}": {reason}')

    def relative_open(self, fname: str) -> tuple[IO[bytes], str]:
        """Open *fname*, searching the current directory then the search path.

        ``-`` means standard input. Returns the open file and its full name.
        """
        if fname == "-":
            f, fullname = sys.stdin.buffer, "<stdin>"
        else:
            f, fullname = self._open_any_on_path(fname)
        if self.depfile is not None:
            self.depfile.write(" " + escape_path(fullname))
        return f, fullname

    def push(self, fname: str) -> SourceFile:
        """Open *fname* and make it the current source file."""
        depth = self._depth
        self._depth += 1
        if depth >= MAX_SRCFILE_DEPTH:
            raise SourceError("Includes nested too deeply")

        f, fullname = self.relative_open(fname)
        srcfile = SourceFile(
            f=f, name=fullname, dir=_dirname(fullname), prev=self.current
        )
        self.current = srcfile
        if self._depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current source file; tell whether an outer one remains."""
        srcfile = self.current
        if srcfile is None:
            raise SourceError("no source file to pop")
        self.current = srcfile.prev
        if srcfile.f is not None and srcfile.f is not sys.stdin.buffer:
            try:
                srcfile.f.close()
            except OSError as exc:
                raise SourceError(
                    f'Error closing "{srcfile.name}": {exc.strerror}'
                ) from exc
        return self.current is not None

    def update(self, text: str) -> SourcePosition:
        """Advance over *text* in the current file and return the span it covers."""
        cur = self.current
        if cur is None:
            raise SourceError("no current source file")
        pos = SourcePosition(first_line=cur.lineno, first_column=cur.colno, file=cur)
        for ch in text:
            if ch == "\n":
                cur.lineno += 1
                cur.colno = 1
            else:
                cur.colno += 1
        pos.last_line = cur.lineno
        pos.last_column = cur.colno
        return pos

    def set_line(self, filename: str, line: int) -> None:
        """Apply a line marker: the current file is now *filename* at *line*."""
        cur = self.current
        if cur is None:
            raise SourceError("no current source file")
        cur.name = filename
        cur.lineno = line
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(filename)

    def shorten_to_initial_path(self, fname: str) -> Optional[str]:
        """Express *fname* relative to the directory of the first input file.

        Returns None if the two share no leading directory.
        """
        initial = self._initial_path
        if initial is None:
            return None
        prevslash = -1
        slashes = 0
        for idx, (a, b) in enumerate(zip(fname, initial)):
            if a != b:
                break
            if a == "/":
                prevslash = idx
                slashes += 1
        if prevslash < 0:
            return None
        diff = self._initial_pathlen - slashes
        return "../" * diff + fname[prevslash + 1 :]