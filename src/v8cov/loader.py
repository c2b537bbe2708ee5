"""Read raw V8 process coverage dumps (NODE_V8_COVERAGE output) from disk.

Each dump is JSON of the form::

    {
      "result": [{"scriptId": "1", "url": "file:///...", "functions": [...]}],
      "source-map-cache": {"file:///...": {"data": {...}, "lineLengths": [...]}}
    }

Validation happens once, here, so the rest of the pipeline can rely on the
shape of every record it receives.
"""

import json
import os
import sys


class InvalidProcessCovError(ValueError):
    """Raised when a parsed dump does not look like V8 process coverage."""


class LoadResult:
    """Outcome of reading one dump file: either process_cov or error is set."""

    def __init__(self, path, process_cov=None, error=None):
        self.path = path
        self.process_cov = process_cov
        self.error = error

    @property
    def ok(self):
        return self.error is None

    def __repr__(self):
        state = "ok" if self.ok else f"error={self.error!r}"
        return f"LoadResult({self.path!r}, {state})"


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_function_cov(func, where):
    if not isinstance(func, dict):
        raise InvalidProcessCovError(f"{where}: function coverage must be an object")
    ranges = func.get("ranges")
    if not isinstance(ranges, list) or not ranges:
        raise InvalidProcessCovError(f"{where}: 'ranges' must be a non-empty list")
    for r in ranges:
        if not isinstance(r, dict) or not all(
            _is_int(r.get(key)) for key in ("startOffset", "endOffset", "count")
        ):
            raise InvalidProcessCovError(
                f"{where}: range needs integer startOffset, endOffset and count"
            )
    return {
        "functionName": str(func.get("functionName", "")),
        "ranges": [
            {"startOffset": r["startOffset"], "endOffset": r["endOffset"], "count": r["count"]}
            for r in ranges
        ],
        "isBlockCoverage": bool(func.get("isBlockCoverage", False)),
    }


def validate_process_cov(data):
    """Check that data has the process coverage shape and return a clean copy.

    The copy holds only the keys the merge uses, so later stages may
    mutate it freely without touching the caller's object.

    Raises:
        InvalidProcessCovError: If any part of the record is malformed.
    """
    if not isinstance(data, dict) or not isinstance(data.get("result"), list):
        raise InvalidProcessCovError("process coverage needs a 'result' list")

    result = []
    for index, script in enumerate(data["result"]):
        where = f"result[{index}]"
        if not isinstance(script, dict):
            raise InvalidProcessCovError(f"{where}: script coverage must be an object")
        url = script.get("url")
        functions = script.get("functions")
        if not isinstance(url, str):
            raise InvalidProcessCovError(f"{where}: 'url' must be a string")
        if not isinstance(functions, list):
            raise InvalidProcessCovError(f"{where}: 'functions' must be a list")
        result.append({
            "scriptId": str(script.get("scriptId", index)),
            "url": url,
            "functions": [
                _validate_function_cov(func, f"{where}.functions[{i}]")
                for i, func in enumerate(functions)
            ],
        })

    cov = {"result": result}
    source_map_cache = data.get("source-map-cache")
    if source_map_cache is not None:
        if not isinstance(source_map_cache, dict):
            raise InvalidProcessCovError("'source-map-cache' must be an object")
        cov["source-map-cache"] = source_map_cache
    return cov


def read_report(path):
    """Read and validate a single dump file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return LoadResult(path, process_cov=validate_process_cov(data))
    except (OSError, ValueError) as e:
        return LoadResult(path, error=e)


def load_reports(directory):
    """Return the validated process coverages found in directory.

    Files that cannot be read or parsed are reported on stderr and skipped.
    A missing or unreadable directory is not handled here: the OSError from
    listing it propagates to the caller.
    """
    reports = []
    for name in os.listdir(directory):
        path = os.path.join(directory, name)
        if os.path.isdir(path):
            continue
        loaded = read_report(path)
        if loaded.ok:
            reports.append(loaded.process_cov)
        else:
            print(f"Warning: skipping coverage dump {path}: {loaded.error}", file=sys.stderr)
    return reports
