"""Istanbul-format coverage records and the per-file coverage map.

A file record is the dict Istanbul reporters expect::

    {"path": ..., "statementMap": {...}, "s": {...},
     "branchMap": {...}, "b": {...}, "fnMap": {...}, "f": {...}}

Merging matches statements, functions and branches by source location
rather than by index, so records produced separately for the same file
add up correctly.
"""

import copy

EMPTY_FUNCTION_NAME = "(empty-report)"


def _loc_key(loc):
    start, end = loc["start"], loc["end"]
    return (start["line"], start["column"], end["line"], end["column"])


def _statement_key(item):
    return _loc_key(item)


def _function_key(item):
    return _loc_key(item["loc"])


def _branch_key(item):
    locations = item.get("locations") or [item["loc"]]
    return _loc_key(locations[0])


def _add_hits(a, b):
    if isinstance(a, list):
        length = max(len(a), len(b))
        return [
            (a[i] if i < len(a) else 0) + (b[i] if i < len(b) else 0)
            for i in range(length)
        ]
    return a + b


def _merge_prop(a_hits, a_map, b_hits, b_map, item_key):
    merged = {}
    for hits, item_map in ((a_hits, a_map), (b_hits, b_map)):
        for key, item_hits in hits.items():
            item = item_map[key]
            loc_key = item_key(item)
            if loc_key in merged:
                merged[loc_key] = (_add_hits(merged[loc_key][0], item_hits), merged[loc_key][1])
            else:
                merged[loc_key] = (copy.deepcopy(item_hits), item)

    new_hits = {}
    new_map = {}
    for index, loc_key in enumerate(sorted(merged)):
        item_hits, item = merged[loc_key]
        new_hits[str(index)] = item_hits
        new_map[str(index)] = item
    return new_hits, new_map


class FileCoverage:
    """Coverage for a single file, wrapping an Istanbul file record."""

    def __init__(self, data):
        if isinstance(data, FileCoverage):
            data = data.data
        elif isinstance(data, str):
            data = {"path": data, "statementMap": {}, "s": {}, "branchMap": {}, "b": {},
                    "fnMap": {}, "f": {}}
        missing = [k for k in ("path", "statementMap", "s", "branchMap", "b", "fnMap", "f")
                   if k not in data]
        if missing:
            raise ValueError(f"Invalid file coverage object, missing keys: {', '.join(missing)}")
        self.data = copy.deepcopy(data)

    @property
    def path(self):
        return self.data["path"]

    @property
    def all(self):
        return bool(self.data.get("all"))

    @property
    def s(self):
        return self.data["s"]

    @property
    def b(self):
        return self.data["b"]

    @property
    def f(self):
        return self.data["f"]

    def merge(self, other):
        """Add the counts of other (same path) into this record."""
        if other.path != self.path:
            raise ValueError(f"Cannot merge coverage for {other.path} into {self.path}")
        # Placeholder records from --all never override real coverage
        if other.all:
            return
        if self.all:
            self.data = copy.deepcopy(other.data)
            return
        d, o = self.data, other.data
        d["s"], d["statementMap"] = _merge_prop(
            d["s"], d["statementMap"], o["s"], o["statementMap"], _statement_key
        )
        d["f"], d["fnMap"] = _merge_prop(d["f"], d["fnMap"], o["f"], o["fnMap"], _function_key)
        d["b"], d["branchMap"] = _merge_prop(
            d["b"], d["branchMap"], o["b"], o["branchMap"], _branch_key
        )

    def get_line_coverage(self):
        """Return {line: count}, taking the highest count of the line's statements."""
        lines = {}
        for key, count in self.data["s"].items():
            line = self.data["statementMap"][key]["start"]["line"]
            if line not in lines or lines[line] < count:
                lines[line] = count
        return lines

    def to_json(self):
        return copy.deepcopy(self.data)

    def __eq__(self, other):
        return isinstance(other, FileCoverage) and self.data == other.data

    def __repr__(self):
        return f"FileCoverage({self.path!r})"


class CoverageMap:
    """Mapping of absolute file path to FileCoverage."""

    def __init__(self, data=None):
        self.data = {}
        if data is not None:
            self.merge(data)

    def merge(self, obj):
        """Merge a CoverageMap or a {path: record} dict into this map."""
        items = obj.data if isinstance(obj, CoverageMap) else obj
        for file_cov in items.values():
            self.add_file_coverage(file_cov)

    def add_file_coverage(self, file_cov):
        file_cov = FileCoverage(file_cov)
        existing = self.data.get(file_cov.path)
        if existing is None:
            self.data[file_cov.path] = file_cov
        else:
            existing.merge(file_cov)

    def file_coverage_for(self, path):
        try:
            return self.data[path]
        except KeyError:
            raise KeyError(f"No file coverage available for: {path}") from None

    def files(self):
        return list(self.data)

    def to_json(self):
        return {path: fc.to_json() for path, fc in self.data.items()}

    def __contains__(self, path):
        return path in self.data

    def __len__(self):
        return len(self.data)

    def __eq__(self, other):
        return isinstance(other, CoverageMap) and self.data == other.data

    def __repr__(self):
        return f"CoverageMap({len(self.data)} files)"


def empty_file_coverage(path, source):
    """Build an all-zero record for a file that was never loaded.

    Every line of source (a CovSource) is an unexecuted statement. Reporters
    read empty branch and function maps as 100%, so one unexecuted branch
    and one unexecuted function are recorded at the top of the file.
    """
    statement_map = {}
    s = {}
    for index, line in enumerate(source.lines):
        statement_map[str(index)] = line.to_istanbul()
        s[str(index)] = 0
    top = {"start": {"line": 1, "column": 0}, "end": {"line": 1, "column": 0}}
    return FileCoverage({
        "path": path,
        "all": True,
        "statementMap": statement_map,
        "s": s,
        "branchMap": {
            "0": {"type": "branch", "line": 1, "loc": copy.deepcopy(top),
                  "locations": [copy.deepcopy(top)]},
        },
        "b": {"0": [0]},
        "fnMap": {
            "0": {"name": EMPTY_FUNCTION_NAME, "decl": copy.deepcopy(top),
                  "loc": copy.deepcopy(top), "line": 1},
        },
        "f": {"0": 0},
    })
