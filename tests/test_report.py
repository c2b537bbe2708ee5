"""Tests for the aggregation engine (v8cov.report.Report)."""

import json
import os
from unittest.mock import patch

import pytest

from v8cov import report as report_module
from v8cov.istanbul import EMPTY_FUNCTION_NAME
from v8cov.report import Report, create_report
from v8cov.urls import to_file_url

from tests.conftest import bridge_functions, math_functions, script

# Statement index of line 7 (`add(1, 2);`), the module-level call
LAST_LINE = "6"


def _report(project, dump_dir, **kwargs):
    return Report(resolve=project.root, temp_directory=dump_dir.path, **kwargs)


def _file(coverage_map, path):
    return coverage_map.file_coverage_for(path).data


class TestMerging:
    def test_counts_from_two_dumps_add_up(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions(add_count=3))])
        dump_dir.write([script(project.url("src/math.js"), math_functions(add_count=2))])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        fn_index = next(k for k, fn in data["fnMap"].items() if fn["name"] == "add")
        assert data["f"][fn_index] == 5
        # lines 1-3 belong to add(), line 7 only to the module
        assert data["s"]["0"] == 5
        assert data["s"][LAST_LINE] == 2

    def test_dump_order_does_not_matter(self, project, dump_dir, tmp_path):
        project.write("src/math.js")
        first = [script(project.url("src/math.js"), math_functions(add_count=3))]
        second = [script(project.url("src/math.js"), math_functions(add_count=0, sub_count=4))]

        dump_dir.write(first, name="a.json")
        dump_dir.write(second, name="b.json")
        forward = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        dump_dir.write(second, name="a.json")
        dump_dir.write(first, name="b.json")
        backward = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        assert forward.to_json() == backward.to_json()

    def test_file_url_and_bare_path_are_one_file(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(to_file_url(path), math_functions(module_count=1))])
        dump_dir.write([script(path, math_functions(module_count=2))])

        coverage_map = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        assert coverage_map.files() == [path]
        assert _file(coverage_map, path)["s"][LAST_LINE] == 3

    def test_uncovered_function_lines_are_zero(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions(sub_count=0))])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        assert data["s"] == {"0": 1, "1": 1, "2": 1, "3": 0, "4": 0, "5": 0, "6": 1}


class TestFiltering:
    def test_excluded_script_contributes_nothing(self, project, dump_dir):
        project.write("src/math.js")
        kept = project.write("src/kept.js")
        dump_dir.write([
            script(project.url("src/math.js"), math_functions()),
            script(project.url("src/kept.js"), math_functions()),
        ])

        coverage_map = _report(
            project, dump_dir, exclude=["src/math.js"]
        ).get_coverage_map_from_all_coverage_files()

        assert coverage_map.files() == [kept]

    def test_node_internals_and_relative_urls_are_dropped(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([
            script("node:internal/modules/cjs/loader", math_functions()),
            script("internal/bootstrap.js", math_functions()),
            script(project.url("src/math.js"), math_functions()),
        ])

        coverage_map = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        assert coverage_map.files() == [path]

    def test_relative_urls_kept_when_allowed(self, project, dump_dir, monkeypatch):
        path = project.write("src/math.js")
        monkeypatch.chdir(project.root)
        dump_dir.write([script("src/math.js", math_functions())])

        coverage_map = _report(
            project, dump_dir, omit_relative=False
        ).get_coverage_map_from_all_coverage_files()

        assert coverage_map.files() == [path]

    def test_malformed_file_url_drops_only_that_script(self, project, dump_dir, capsys):
        path = project.write("src/math.js")
        dump_dir.write([
            script("file://remote-host/src/math.js", math_functions()),
            script(project.url("src/math.js"), math_functions()),
        ])

        coverage_map = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        assert coverage_map.files() == [path]
        assert "Warning" in capsys.readouterr().err


class TestBridges:
    """Deduplication of the ESM wrapper Node.js creates for CommonJS modules."""

    def test_bridge_dropped_when_real_script_present(self, project, dump_dir):
        path = project.write("src/math.js")
        # A different spelling of the same path still resolves to one file
        bridge_url = os.path.join(project.root, "src", "..", "src", "math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions(module_count=1))])
        dump_dir.write([script(bridge_url, bridge_functions(module_count=7))])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        assert data["s"][LAST_LINE] == 1
        assert "get" not in [fn["name"] for fn in data["fnMap"].values()]

    def test_bridge_sharing_the_module_url_is_dropped(self, project, dump_dir):
        path = project.write("src/math.js")
        url = project.url("src/math.js")
        dump_dir.write([
            script(url, math_functions(module_count=1)),
            script(url, bridge_functions(module_count=7)),
        ])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        assert data["s"][LAST_LINE] == 1
        assert sorted(fn["name"] for fn in data["fnMap"].values()) == ["add", "sub"]

    def test_bridge_in_another_dump_is_dropped(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions(module_count=1))])
        dump_dir.write([script(project.url("src/math.js"), bridge_functions(module_count=7))])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        assert data["s"][LAST_LINE] == 1
        assert sorted(fn["name"] for fn in data["fnMap"].values()) == ["add", "sub"]

    def test_bridges_from_several_dumps_add_up(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), bridge_functions(module_count=7))])
        dump_dir.write([script(project.url("src/math.js"), bridge_functions(module_count=3))])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        assert data["s"][LAST_LINE] == 10

    def test_bridge_used_when_it_is_the_only_record(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), bridge_functions(module_count=7))])

        data = _file(_report(project, dump_dir).get_coverage_map_from_all_coverage_files(), path)

        assert data["s"][LAST_LINE] == 7


class TestAllFiles:
    def test_unloaded_file_gets_zero_record(self, project, dump_dir):
        loaded = project.write("src/math.js")
        unloaded = project.write("src/unused.js", "const x = 1;\nmodule.exports = x;\n")
        project.write("test/math.test.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions())])

        coverage_map = _report(project, dump_dir, all=True).get_coverage_map_from_all_coverage_files()

        assert sorted(coverage_map.files()) == sorted([loaded, unloaded])
        data = _file(coverage_map, unloaded)
        assert data["s"] == {"0": 0, "1": 0}
        assert data["b"] == {"0": [0]}
        assert data["f"] == {"0": 0}
        assert data["fnMap"]["0"]["name"] == EMPTY_FUNCTION_NAME
        assert _file(coverage_map, loaded)["s"][LAST_LINE] == 1

    def test_loaded_file_is_not_zeroed(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions())])

        coverage_map = _report(project, dump_dir, all=True).get_coverage_map_from_all_coverage_files()

        data = _file(coverage_map, path)
        assert not data.get("all")
        assert data["s"]["0"] == 1

    def test_file_list_respects_include(self, project, dump_dir):
        kept = project.write("src/math.js")
        project.write("lib/other.js")

        files = _report(project, dump_dir, include=["src/**"]).get_file_list_for_all()

        assert files == {kept: False}


class TestErrorHandling:
    def test_unparseable_dump_is_skipped(self, project, dump_dir, tmp_path, capsys):
        project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions(add_count=3))])
        dump_dir.write([script(project.url("src/math.js"), math_functions(add_count=2))])
        expected = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        dump_dir.write_raw("broken.json", "{not json")
        actual = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        assert actual.to_json() == expected.to_json()
        assert "broken.json" in capsys.readouterr().err

    def test_missing_source_skips_only_that_script(self, project, dump_dir, capsys):
        path = project.write("src/math.js")
        missing = os.path.join(project.root, "src", "gone.js")
        dump_dir.write([
            script(missing, math_functions()),
            script(project.url("src/math.js"), math_functions()),
        ])

        coverage_map = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        assert coverage_map.files() == [path]
        err = capsys.readouterr().err
        assert f"file: {missing}" in err
        assert "Traceback" in err

    def test_missing_temp_directory_is_fatal(self, project, tmp_path):
        report = Report(resolve=project.root, temp_directory=str(tmp_path / "nope"))
        with pytest.raises(FileNotFoundError):
            report.get_coverage_map_from_all_coverage_files()


class TestMemoization:
    def test_merge_runs_once(self, project, dump_dir):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions())])
        report = _report(project, dump_dir)

        with patch.object(
            report_module, "load_reports", wraps=report_module.load_reports
        ) as loader:
            first = report.get_coverage_map_from_all_coverage_files()
            second = report.get_coverage_map_from_all_coverage_files()

        assert loader.call_count == 1
        assert first is second
        assert _file(second, path)["s"][LAST_LINE] == 1


class TestSourceMapCache:
    def test_cached_map_redirects_to_original_source(self, project, dump_dir):
        original = "const a = 1;\nconst b = 2;\n"
        transpiled = os.path.join(project.root, "dist", "app.js")
        source_map = {
            "version": 3,
            "sources": ["../src/app.ts"],
            "sourcesContent": [original],
            "names": [],
            "mappings": "AAAA;AACA",
        }
        functions = [{"functionName": "", "isBlockCoverage": True,
                      "ranges": [{"startOffset": 0, "endOffset": 26, "count": 1}]}]
        # The map arrives in a different dump than the script that uses it
        dump_dir.write([script(to_file_url(transpiled), functions)])
        dump_dir.write([], source_map_cache={
            to_file_url(transpiled): {"data": source_map, "lineLengths": [12, 12]},
        })

        coverage_map = _report(project, dump_dir).get_coverage_map_from_all_coverage_files()

        expected = os.path.join(project.root, "src", "app.ts")
        assert coverage_map.files() == [expected]
        assert len(_file(coverage_map, expected)["statementMap"]) == 2


class TestFactory:
    def test_create_report_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NODE_V8_COVERAGE", str(tmp_path))
        report = create_report(resolve=str(tmp_path))
        assert report.temp_directory == str(tmp_path)
        assert report.omit_relative is True
        assert report.reporter == ["text"]


class TestRun:
    """Rendering the merged map through coverage.py reporters."""

    def test_text_report(self, project, dump_dir, tmp_path, capsys):
        project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions())])
        report = _report(project, dump_dir, reporter=["text"], show_missing=True,
                         reports_directory=str(tmp_path / "out"))

        total = report.run()

        out = capsys.readouterr().out
        assert os.path.join("src", "math.js") in out
        assert "4-6" in out
        assert total == pytest.approx(100.0 * 4 / 7)

    def test_file_formats(self, project, dump_dir, tmp_path):
        path = project.write("src/math.js")
        dump_dir.write([script(project.url("src/math.js"), math_functions())])
        out_dir = tmp_path / "out"
        report = _report(project, dump_dir, reporter=["json", "lcov", "istanbul"],
                         reports_directory=str(out_dir))

        report.run()

        with open(out_dir / "coverage.json") as f:
            totals = json.load(f)["totals"]
        assert totals["num_statements"] == 7
        assert totals["covered_lines"] == 4
        assert (out_dir / "lcov.info").exists()
        with open(out_dir / "coverage-final.json") as f:
            assert list(json.load(f)) == [path]
