"""Shared fixtures: a throwaway project tree and a V8 dump directory."""

import json
import os

import pytest

from v8cov.urls import to_file_url

# function add(a, b) {      line 1, offsets  0..20
#   return a + b;           line 2, offsets 21..36
# }                         line 3, offsets 37..38
# function sub(a, b) {      line 4, offsets 39..59
#   return a - b;           line 5, offsets 60..75
# }                         line 6, offsets 76..77
# add(1, 2);                line 7, offsets 78..88
MATH_JS = (
    "function add(a, b) {\n"
    "  return a + b;\n"
    "}\n"
    "function sub(a, b) {\n"
    "  return a - b;\n"
    "}\n"
    "add(1, 2);\n"
)


def math_functions(module_count=1, add_count=1, sub_count=0):
    """V8 block coverage for MATH_JS."""
    return [
        {"functionName": "", "isBlockCoverage": True,
         "ranges": [{"startOffset": 0, "endOffset": 89, "count": module_count}]},
        {"functionName": "add", "isBlockCoverage": True,
         "ranges": [{"startOffset": 0, "endOffset": 38, "count": add_count}]},
        {"functionName": "sub", "isBlockCoverage": True,
         "ranges": [{"startOffset": 39, "endOffset": 77, "count": sub_count}]},
    ]


def bridge_functions(module_count=1):
    """Coverage shaped like the ESM wrapper Node.js builds around a CJS module."""
    return [
        {"functionName": "", "isBlockCoverage": True,
         "ranges": [{"startOffset": 0, "endOffset": 89, "count": module_count}]},
        {"functionName": "get", "isBlockCoverage": False,
         "ranges": [{"startOffset": 0, "endOffset": 20, "count": 1}]},
        {"functionName": "set", "isBlockCoverage": False,
         "ranges": [{"startOffset": 21, "endOffset": 36, "count": 0}]},
    ]


def script(url, functions, script_id="0"):
    return {"scriptId": script_id, "url": url, "functions": functions}


@pytest.fixture
def project(tmp_path):
    """Create files under a project root; returns a helper with .root and .write()."""
    root = tmp_path / "project"
    root.mkdir()

    class Project:
        def __init__(self):
            self.root = str(root)

        def write(self, rel, content=MATH_JS):
            path = os.path.join(self.root, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
            return path

        def url(self, rel):
            return to_file_url(os.path.join(self.root, rel))

    return Project()


@pytest.fixture
def dump_dir(tmp_path):
    """Directory of V8 dumps; returns a helper with .path and .write()."""
    path = tmp_path / "v8-coverage"
    path.mkdir()

    class DumpDir:
        def __init__(self):
            self.path = str(path)
            self._n = 0

        def write(self, result, source_map_cache=None, name=None):
            self._n += 1
            name = name or f"coverage-{self._n}.json"
            data = {"result": result}
            if source_map_cache is not None:
                data["source-map-cache"] = source_map_cache
            with open(os.path.join(self.path, name), "w", encoding="utf-8") as f:
                json.dump(data, f)
            return name

        def write_raw(self, name, text):
            with open(os.path.join(self.path, name), "w", encoding="utf-8") as f:
                f.write(text)

    return DumpDir()
