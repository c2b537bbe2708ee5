"""Translate V8 byte-offset coverage for one script into Istanbul file coverage.

Each source line becomes one statement. Lines start out covered and are
zeroed when a V8 range spanning the whole line reports a count of 0.
Block ranges become single-location branches and named functions become
Istanbul functions. Counts for lines covered by ``/* c8 ignore next [N] */``
or enclosed by ``/* c8 ignore start */`` ... ``/* c8 ignore stop */`` are
never zeroed.
"""

import os
import re
import sys

from v8cov.sourcemap import LEAST_UPPER_BOUND, SourceMapConsumer

_LINE_SPLIT_RE = re.compile(r"(?<=\n)")
_IGNORE_NEXT_N_RE = re.compile(r"^\W*/\* c8 ignore next (?P<count>[0-9]+)? *\*/\W*$")
_IGNORE_NEXT_RE = re.compile(r"/\* c8 ignore next \*/")
_IGNORE_START_RE = re.compile(r"/\* c8 ignore start \*/")
_IGNORE_STOP_RE = re.compile(r"/\* c8 ignore stop \*/")
_SHEBANG_RE = re.compile(r"#!.*")


def _location(start_line, start_col, end_line, end_col):
    return {
        "start": {"line": start_line, "column": start_col},
        "end": {"line": end_line, "column": end_col},
    }


class CovLine:
    def __init__(self, line, start_col, line_str):
        self.line = line
        self.start_col = start_col
        if line_str.endswith("\r\n"):
            newline_length = 2
        elif line_str.endswith("\n"):
            newline_length = 1
        else:
            newline_length = 0
        self.end_col = start_col + len(line_str) - newline_length
        # All lines start out executed and are zeroed by uncovered ranges
        self.count = 1
        self.ignore = False

    def to_istanbul(self):
        return _location(self.line, 0, self.line, self.end_col - self.start_col)


class CovBranch:
    def __init__(self, start_line, start_col, end_line, end_col, count):
        self.start_line = start_line
        self.start_col = start_col
        self.end_line = end_line
        self.end_col = end_col
        self.count = count

    def to_istanbul(self):
        location = _location(self.start_line, self.start_col, self.end_line, self.end_col)
        return {
            "type": "branch",
            "line": self.start_line,
            "loc": location,
            "locations": [_location(self.start_line, self.start_col, self.end_line, self.end_col)],
        }


class CovFunction:
    def __init__(self, name, start_line, start_col, end_line, end_col, count):
        self.name = name
        self.start_line = start_line
        self.start_col = start_col
        self.end_line = end_line
        self.end_col = end_col
        self.count = count

    def to_istanbul(self):
        location = _location(self.start_line, self.start_col, self.end_line, self.end_col)
        return {
            "name": self.name,
            "decl": location,
            "loc": dict(location),
            "line": self.start_line,
        }


def _shebang_length(source):
    if source.startswith("#!"):
        return len(_SHEBANG_RE.match(source).group(0))
    return 0


class CovSource:
    """Source text split into CovLines, with offset helpers."""

    def __init__(self, source_raw, wrapper_length):
        source_raw = source_raw.rstrip()
        self.lines = []
        self.eof = len(source_raw)
        self.shebang_length = _shebang_length(source_raw)
        self.wrapper_length = wrapper_length - self.shebang_length
        self._build_lines(source_raw)

    def _build_lines(self, source):
        position = 0
        ignore_count = 0
        ignore_all = False
        for index, line_str in enumerate(_LINE_SPLIT_RE.split(source)):
            if not line_str and index > 0:
                continue
            line = CovLine(index + 1, position, line_str)
            if ignore_count > 0:
                line.ignore = True
                ignore_count -= 1
            elif ignore_all:
                line.ignore = True
            self.lines.append(line)
            position += len(line_str)

            hint = self._parse_ignore(line_str)
            if hint is None:
                continue
            line.ignore = True
            kind, count = hint
            if kind == "next":
                ignore_count = count
            else:
                # start/stop also cancel a pending "ignore next N"
                ignore_all = kind == "start"
                ignore_count = 0

    @staticmethod
    def _parse_ignore(line_str):
        """Return ("next", n), ("start", 0), ("stop", 0) or None for a line's c8 hint."""
        match = _IGNORE_NEXT_N_RE.match(line_str.rstrip("\r\n"))
        if match:
            return "next", int(match.group("count") or 1)
        if _IGNORE_NEXT_RE.search(line_str):
            return "next", 0
        if _IGNORE_START_RE.search(line_str):
            return "start", 0
        if _IGNORE_STOP_RE.search(line_str):
            return "stop", 0
        return None

    def lines_between(self, start_col, end_col):
        return [line for line in self.lines if start_col <= line.end_col and end_col >= line.start_col]

    def offset_to_original_relative(self, source_map, start_col, end_col):
        """Map an absolute span of this (generated) text to original line/column."""
        lines = self.lines_between(start_col, end_col)
        if not lines:
            return None
        first, last = lines[0], lines[-1]
        start = source_map.original_position_try_both(
            first.line, max(0, start_col - first.start_col)
        )
        end = source_map.original_end_position_for(last.line, end_col - last.start_col)
        if not (start and end):
            return None
        if not (start["source"] and end["source"]) or start["source"] != end["source"]:
            return None
        if start["line"] == end["line"] and start["column"] == end["column"]:
            end = source_map.original_position_for(
                last.line, end_col - last.start_col, LEAST_UPPER_BOUND
            )
            if end["line"] is None:
                return None
            end["column"] -= 1
        return {
            "source": start["source"],
            "start_line": start["line"],
            "rel_start_col": start["column"],
            "end_line": end["line"],
            "rel_end_col": end["column"],
        }

    def relative_to_offset(self, line, rel_col):
        line = max(line, 1)
        if line > len(self.lines):
            return self.eof
        cov_line = self.lines[line - 1]
        return min(cov_line.start_col + rel_col, cov_line.end_col)


class V8ToIstanbul:
    """Converter bound to one script path.

    Args:
        script_path: Path of the executed script.
        wrapper_length: Bytes of module wrapper V8 counted before the source.
        sources: Optional dict with "source" (text to use instead of reading
            script_path), "sourceMap" ({"sourcemap": raw map}) and
            "originalSource".
    """

    def __init__(self, script_path, wrapper_length=0, sources=None):
        if not isinstance(script_path, str):
            raise TypeError("script_path must be a string")
        self.path = os.path.abspath(script_path)
        self.wrapper_length = wrapper_length or 0
        self.sources = sources or {}
        self.source = None
        self.source_transpiled = None
        self.source_map = None
        self.branches = []
        self.functions = []

    def load(self):
        raw_source = self.sources.get("source")
        if raw_source is None:
            with open(self.path, encoding="utf-8") as f:
                raw_source = f.read()

        raw_source_map = self.sources.get("sourceMap")
        sourcemap = raw_source_map.get("sourcemap") if raw_source_map else None
        if not sourcemap:
            self.source = CovSource(raw_source, self.wrapper_length)
            return
        if len(sourcemap.get("sources") or []) > 1:
            print(
                f"Warning: {self.path}: source maps from one to many files are not "
                "supported, reporting the transpiled file",
                file=sys.stderr,
            )
            self.source = CovSource(raw_source, self.wrapper_length)
            return

        self.source_map = SourceMapConsumer(sourcemap)
        self._rewrite_path(sourcemap)

        sources_content = sourcemap.get("sourcesContent") or []
        if len(sources_content) == 1 and sources_content[0] is not None:
            original_raw_source = sources_content[0]
        elif self.sources.get("originalSource") is not None:
            original_raw_source = self.sources["originalSource"]
        else:
            with open(self.path, encoding="utf-8") as f:
                original_raw_source = f.read()

        self.source = CovSource(original_raw_source, self.wrapper_length)
        self.source_transpiled = CovSource(raw_source, self.wrapper_length)

    def _rewrite_path(self, sourcemap):
        source_root = (sourcemap.get("sourceRoot") or "").replace("file://", "")
        sources = sourcemap.get("sources") or []
        source_path = sources[0] if sources else sourcemap.get("file")
        if not source_path:
            return
        if source_path.startswith("file://"):
            source_path = source_path[len("file://"):]
        candidate = os.path.join(source_root, source_path)
        if os.path.isabs(candidate):
            self.path = os.path.normpath(candidate)
        else:
            self.path = os.path.normpath(os.path.join(os.path.dirname(self.path), candidate))

    def _start_col_end_col(self, range_cov):
        source = self.source_transpiled if self.source_map else self.source
        start_col = max(0, range_cov["startOffset"] - source.wrapper_length)
        end_col = min(source.eof, range_cov["endOffset"] - source.wrapper_length)
        if not self.source_map:
            return start_col, end_col

        original = source.offset_to_original_relative(self.source_map, start_col, end_col)
        if original is None:
            return None
        start_col = self.source.relative_to_offset(original["start_line"], original["rel_start_col"])
        end_col = self.source.relative_to_offset(original["end_line"], original["rel_end_col"])
        return start_col, end_col

    def apply_coverage(self, blocks):
        """Fold V8 function coverage (a script's "functions" list) into this file."""
        if self.source is None:
            raise RuntimeError("load() must be called before apply_coverage()")
        for block in blocks:
            for index, range_cov in enumerate(block["ranges"]):
                cols = self._start_col_end_col(range_cov)
                if cols is None:
                    continue
                start_col, end_col = cols
                lines = self.source.lines_between(start_col, end_col)
                if not lines:
                    continue
                first, last = lines[0], lines[-1]
                span = (first.line, start_col - first.start_col, last.line, end_col - last.start_col)

                if block["isBlockCoverage"]:
                    self.branches.append(CovBranch(*span, range_cov["count"]))
                    # Block coverage still yields one function per block's root range
                    if block["functionName"] and index == 0:
                        self.functions.append(
                            CovFunction(block["functionName"], *span, range_cov["count"])
                        )
                elif block["functionName"]:
                    self.functions.append(
                        CovFunction(block["functionName"], *span, range_cov["count"])
                    )

                for line in lines:
                    # Only ranges spanning the entire line set its count, so the
                    # untaken arm of `a ? b : c` does not zero the line
                    if start_col <= line.start_col and end_col >= line.end_col and not line.ignore:
                        line.count = range_cov["count"]

    def _is_ignored(self, line_number):
        if not 1 <= line_number <= len(self.source.lines):
            return True
        return self.source.lines[line_number - 1].ignore

    def to_istanbul(self):
        """Return {path: file coverage dict} for the loaded script."""
        if self.source is None:
            raise RuntimeError("load() must be called before to_istanbul()")
        data = {
            "path": self.path,
            "statementMap": {},
            "s": {},
            "branchMap": {},
            "b": {},
            "fnMap": {},
            "f": {},
        }
        for index, line in enumerate(self.source.lines):
            data["statementMap"][str(index)] = line.to_istanbul()
            data["s"][str(index)] = line.count
        for index, branch in enumerate(self.branches):
            data["branchMap"][str(index)] = branch.to_istanbul()
            data["b"][str(index)] = [1 if self._is_ignored(branch.start_line) else branch.count]
        for index, fn in enumerate(self.functions):
            data["fnMap"][str(index)] = fn.to_istanbul()
            data["f"][str(index)] = 1 if self._is_ignored(fn.start_line) else fn.count
        return {self.path: data}
