#!/usr/bin/env python3
# Host-side reporting for V8 coverage data.
# Reads the per-process JSON dumps Node.js writes to NODE_V8_COVERAGE,
# merges them into one Istanbul coverage map and renders it via coverage.py.

import json
import os
import sys
import traceback

import coverage
from coverage.plugin import FileReporter
from coverage.results import analysis_from_file_reporter

from v8cov.bridge import is_cjs_esm_bridge
from v8cov.convert import V8ToIstanbul
from v8cov.exclude import Exclude
from v8cov.istanbul import CoverageMap, empty_file_coverage
from v8cov.loader import load_reports
from v8cov.merge import merge_process_covs
from v8cov.urls import is_file_url, to_file_url, to_sys_path

DEFAULT_TEMP_DIRECTORY = os.path.join("coverage", "tmp")
DEFAULT_REPORTS_DIRECTORY = "coverage"
REPORT_FORMATS = ["text", "html", "json", "xml", "lcov", "istanbul"]


def default_temp_directory():
    return os.environ.get("NODE_V8_COVERAGE") or DEFAULT_TEMP_DIRECTORY


class Report:
    """Aggregates every coverage dump in temp_directory into a CoverageMap.

    The map is computed once per instance: a threshold check and a report
    commonly ask for it back to back and the merge is expensive.
    """

    def __init__(self, exclude=None, include=None, extension=None,
                 exclude_node_modules=True, reporter=None,
                 reports_directory=DEFAULT_REPORTS_DIRECTORY, temp_directory=None,
                 watermarks=None, omit_relative=True, wrapper_length=0,
                 resolve=None, all=False, show_missing=False):
        self.reporter = reporter or ["text"]
        self.reports_directory = reports_directory
        self.temp_directory = temp_directory or default_temp_directory()
        self.watermarks = watermarks
        self.resolve = os.path.abspath(resolve or os.getcwd())
        self.exclude = Exclude(
            include=include,
            exclude=exclude,
            extension=extension,
            cwd=self.resolve,
            exclude_node_modules=exclude_node_modules,
        )
        self.omit_relative = omit_relative
        self.wrapper_length = wrapper_length
        self.all = all
        self.show_missing = show_missing
        self._all_coverage_files = None

    def run(self):
        """Render the merged coverage with every configured reporter.

        Returns the total coverage percentage.
        """
        coverage_map = self.get_coverage_map_from_all_coverage_files()
        return render_reports(
            coverage_map,
            self.reporter,
            reports_directory=self.reports_directory,
            root=self.resolve,
            show_missing=self.show_missing,
        )

    def get_coverage_map_from_all_coverage_files(self):
        if self._all_coverage_files is not None:
            return self._all_coverage_files

        all_files = self.get_file_list_for_all() if self.all else None
        coverage_map = CoverageMap()
        process_cov, bridge_cov, source_map_cache = self._get_merged_process_cov()

        # Phase 1: apply every regular script
        non_bridge_counts = {}
        for script_cov in process_cov["result"]:
            try:
                path = self._resolve_script_path(script_cov, all_files)
                converter = self._load_converter(path, script_cov, source_map_cache)
                non_bridge_counts[path] = non_bridge_counts.get(path, 0) + 1
                converter.apply_coverage(script_cov["functions"])
                coverage_map.merge(converter.to_istanbul())
            except Exception:
                _warn_script_failure(script_cov, traceback.format_exc())

        # Phase 2: a CJS/ESM bridge counts only when it is all we saw of the file
        for script_cov in bridge_cov["result"]:
            try:
                path = self._resolve_script_path(script_cov, all_files)
                if non_bridge_counts.get(path, 0) > 0:
                    continue
                converter = self._load_converter(path, script_cov, source_map_cache)
                converter.apply_coverage(script_cov["functions"])
                coverage_map.merge(converter.to_istanbul())
            except Exception:
                _warn_script_failure(script_cov, traceback.format_exc())

        if all_files is not None:
            self._create_empty_records_for_unloaded_files(all_files, coverage_map)

        self._all_coverage_files = coverage_map
        return coverage_map

    def _resolve_script_path(self, script_cov, all_files):
        path = os.path.abspath(os.path.join(self.resolve, script_cov["url"]))
        # A coverage record means the file was loaded, even if the record
        # is not applied
        if all_files is not None and path in all_files:
            all_files[path] = True
        return path

    def _load_converter(self, path, script_cov, source_map_cache):
        sources = self._get_source_map(script_cov, source_map_cache)
        converter = V8ToIstanbul(path, self.wrapper_length, sources)
        converter.load()
        return converter

    def get_file_list_for_all(self):
        """Return {absolute path: False} for every file the include rules match."""
        return {
            os.path.abspath(os.path.join(self.resolve, f)): False
            for f in self.exclude.glob_sync(self.resolve)
        }

    def _create_empty_records_for_unloaded_files(self, all_files, coverage_map):
        for path, seen in all_files.items():
            if seen:
                continue
            try:
                coverage_map.add_file_coverage(self._get_empty_coverage_result_for_file(path))
            except (OSError, UnicodeDecodeError) as e:
                print(f"Warning: cannot create empty coverage for {path}: {e}", file=sys.stderr)

    def _get_empty_coverage_result_for_file(self, full_path):
        converter = V8ToIstanbul(full_path, self.wrapper_length)
        converter.load()
        return empty_file_coverage(converter.path, converter.source)

    @staticmethod
    def _get_source_map(script_cov, source_map_cache):
        """Return the converter sources for a script whose map Node.js cached.

        Node.js records line lengths of the transpiled file alongside the
        map (used by ts-node and similar runtime hooks), so a placeholder
        source with the same line layout replaces the transpiled text.
        """
        url = script_cov["url"]
        entry = source_map_cache.get(f"file://{url}")
        if entry is None and os.path.isabs(url):
            entry = source_map_cache.get(to_file_url(url))
        if not entry or not entry.get("data"):
            return {}

        sources = {"sourceMap": {"sourcemap": entry["data"]}}
        line_lengths = entry.get("lineLengths")
        if line_lengths:
            sources["source"] = "".join("." * length + "\n" for length in line_lengths)
        return sources

    def _get_merged_process_cov(self):
        """Return (process coverage, bridge coverage, source map cache).

        Node.js reports a CJS/ESM bridge under the URL of the module it wraps,
        so bridges are split off each dump before merging. Otherwise the
        merge would sum them into the real script.
        """
        process_covs = []
        bridge_covs = []
        source_map_cache = {}
        for process_cov in load_reports(self.temp_directory):
            # Any dump may be the first to observe a module's source map
            source_map_cache.update(process_cov.get("source-map-cache") or {})
            result = self._normalize_process_cov(process_cov)["result"]
            process_covs.append({"result": [s for s in result if not is_cjs_esm_bridge(s)]})
            bridge_covs.append({"result": [s for s in result if is_cjs_esm_bridge(s)]})
        merged = merge_process_covs(process_covs)
        return merged, merge_process_covs(bridge_covs), source_map_cache

    def _normalize_process_cov(self, process_cov):
        """Rewrite file URLs to paths and drop scripts the include rules reject."""
        result = []
        for script_cov in process_cov["result"]:
            url = script_cov["url"]
            if is_file_url(url):
                try:
                    url = to_sys_path(url)
                except ValueError as e:
                    print(f"Warning: {e}", file=sys.stderr)
                    continue
                script_cov["url"] = url
            if self.exclude.should_instrument(url) and (
                not self.omit_relative or os.path.isabs(url)
            ):
                result.append(script_cov)
        return {"result": result}


def _warn_script_failure(script_cov, formatted_traceback):
    print(f"Warning: file: {script_cov['url']} error: {formatted_traceback}", file=sys.stderr)


def create_report(**opts):
    return Report(**opts)


class IstanbulFileReporter(FileReporter):
    """FileReporter that provides executable lines taken from Istanbul statements."""

    def __init__(self, filename, executable_lines, root=None):
        super().__init__(filename)
        self._executable_lines = executable_lines
        self._root = root

    def lines(self):
        return self._executable_lines

    def source(self):
        with open(self.filename, encoding="utf-8") as f:
            return f.read()

    def relative_filename(self):
        if self._root:
            relative = os.path.relpath(self.filename, self._root)
            if not relative.startswith(".."):
                return relative
        return self.filename


class IstanbulCoverage(coverage.Coverage):
    """Coverage subclass that uses IstanbulFileReporter for known files."""

    def __init__(self, file_reporters, **kwargs):
        super().__init__(**kwargs)
        self._istanbul_reporters = file_reporters  # {filename: IstanbulFileReporter}

    def _get_file_reporter(self, morf):
        if isinstance(morf, str) and morf in self._istanbul_reporters:
            return self._istanbul_reporters[morf]
        return super()._get_file_reporter(morf)

    def _get_file_reporters(self, morfs=None):
        if morfs is None:
            morfs = self._istanbul_reporters.keys()
        result = []
        for morf in morfs:
            fr = self._get_file_reporter(morf)
            result.append((fr, morf))
        return result

    def _analyze(self, morf, file_reporter=None):
        data = self.get_data()
        fr = file_reporter or self._get_file_reporter(morf)
        filename = fr.filename
        return analysis_from_file_reporter(data, self.config.precision, fr, filename)


def write_istanbul_json(coverage_map, output_dir):
    os.makedirs(output_dir, exist_ok=True)
    outfile = os.path.join(output_dir, "coverage-final.json")
    with open(outfile, "w", encoding="utf-8") as f:
        json.dump(coverage_map.to_json(), f)
        f.write("\n")
    return outfile


def render_reports(coverage_map, formats=None, reports_directory=None, root=None,
                   show_missing=False):
    """Generate reports for a CoverageMap.

    Statement start lines become coverage.py's executable lines and lines
    with a non-zero count its executed lines.

    Returns the total line coverage percentage.
    """
    if formats is None:
        formats = ["text"]
    output_dir = reports_directory or DEFAULT_REPORTS_DIRECTORY

    file_reporters = {}
    line_data = {}
    for path in coverage_map.files():
        line_coverage = coverage_map.file_coverage_for(path).get_line_coverage()
        if not line_coverage:
            continue
        if not os.path.exists(path):
            print(f"Warning: source not found: {path}", file=sys.stderr)
            continue
        file_reporters[path] = IstanbulFileReporter(path, set(line_coverage), root)
        line_data[path] = {line for line, count in line_coverage.items() if count > 0}

    total = 0.0

    if "istanbul" in formats:
        outfile = write_istanbul_json(coverage_map, output_dir)
        print(f"Istanbul JSON written to {outfile}", file=sys.stderr)

    if not file_reporters:
        print("No files to report on.", file=sys.stderr)
        return total

    cov_obj = IstanbulCoverage(file_reporters, data_file=None)
    cov_obj._init()
    cov_obj._post_init()
    cov_obj.get_data().add_lines(line_data)

    for fmt in formats:
        if fmt == "istanbul":
            continue
        elif fmt == "text":
            total = cov_obj.report(show_missing=show_missing)
        elif fmt == "html":
            outdir = os.path.join(output_dir, "html")
            total = cov_obj.html_report(directory=outdir)
            print(f"HTML report written to {outdir}/", file=sys.stderr)
        elif fmt == "json":
            outfile = os.path.join(output_dir, "coverage.json")
            total = cov_obj.json_report(outfile=outfile)
            print(f"JSON report written to {outfile}", file=sys.stderr)
        elif fmt == "xml":
            outfile = os.path.join(output_dir, "coverage.xml")
            total = cov_obj.xml_report(outfile=outfile)
            print(f"XML report written to {outfile}", file=sys.stderr)
        elif fmt == "lcov":
            outfile = os.path.join(output_dir, "lcov.info")
            total = cov_obj.lcov_report(outfile=outfile)
            print(f"LCOV report written to {outfile}", file=sys.stderr)
        else:
            print(f"Warning: unknown report format: {fmt}", file=sys.stderr)

    return total
