#!/usr/bin/env python3
"""Command line interface for V8 coverage reporting.

Node.js writes one JSON dump per process to the NODE_V8_COVERAGE
directory; 'report' merges every dump there and renders the result,
'list' shows what the directory currently holds.
"""

import argparse
import os
import sys

from v8cov.report import DEFAULT_REPORTS_DIRECTORY, REPORT_FORMATS, default_temp_directory


def _parse_watermark(value):
    low, _, high = value.partition(",")
    try:
        return [float(low), float(high)]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LOW,HIGH, got {value!r}") from None


def cmd_report(args):
    """Execute 'report' subcommand: merge dumps and generate reports."""
    from v8cov.report import Report

    watermarks = {}
    for name in ("statements", "functions", "branches", "lines"):
        value = getattr(args, f"watermark_{name}")
        if value is not None:
            watermarks[name] = value

    report = Report(
        include=args.include or None,
        exclude=args.exclude or None,
        extension=args.extension or None,
        exclude_node_modules=args.exclude_node_modules,
        reporter=args.reporters or ["text"],
        reports_directory=args.reports_dir,
        temp_directory=args.temp_directory,
        watermarks=watermarks or None,
        omit_relative=args.omit_relative,
        wrapper_length=args.wrapper_length,
        resolve=args.resolve,
        all=args.all,
        show_missing=args.show_missing,
    )

    print(f"Merging coverage dumps from {report.temp_directory}", file=sys.stderr)
    try:
        coverage_map = report.get_coverage_map_from_all_coverage_files()
    except OSError as e:
        print(f"Error: cannot read coverage directory: {e}", file=sys.stderr)
        return 1
    print(f"Merged: {len(coverage_map)} files", file=sys.stderr)

    report.run()
    return 0


def cmd_list(args):
    """Execute 'list' subcommand: show the dumps in the temp directory."""
    from v8cov.loader import read_report

    temp_directory = args.temp_directory or default_temp_directory()
    try:
        names = sorted(os.listdir(temp_directory))
    except OSError as e:
        print(f"Error: cannot read coverage directory: {e}", file=sys.stderr)
        return 1

    if not names:
        print(f"No coverage dumps in {temp_directory}")
        return 0

    print(f"Coverage dumps in {temp_directory}:")
    for name in names:
        path = os.path.join(temp_directory, name)
        if os.path.isdir(path):
            continue
        loaded = read_report(path)
        if loaded.ok:
            n_scripts = len(loaded.process_cov["result"])
            n_maps = len(loaded.process_cov.get("source-map-cache") or {})
            print(f"  {name}  ({n_scripts} scripts, {n_maps} source maps)")
        else:
            print(f"  {name}  (error: {loaded.error})")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="v8cov",
        description="Merge V8 coverage dumps into an Istanbul coverage map and report on it",
    )
    parser.add_argument(
        "--temp-directory",
        default=None,
        help="Directory holding V8 coverage dumps "
             "(default: $NODE_V8_COVERAGE, then coverage/tmp)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- report ---
    p_report = subparsers.add_parser("report", help="Generate merged coverage report")
    p_report.add_argument(
        "--reporter",
        dest="reporters",
        action="append",
        default=[],
        choices=REPORT_FORMATS,
        help="Report format (repeatable, default: text)",
    )
    p_report.add_argument(
        "--reports-dir",
        default=DEFAULT_REPORTS_DIRECTORY,
        help=f"Directory for report files (default: {DEFAULT_REPORTS_DIRECTORY})",
    )
    p_report.add_argument(
        "--include", action="append", default=[], help="Glob of files to include (repeatable)"
    )
    p_report.add_argument(
        "--exclude", action="append", default=[], help="Glob of files to exclude (repeatable)"
    )
    p_report.add_argument(
        "--extension",
        action="append",
        default=[],
        help="File extension to include (repeatable, default: .js .cjs .mjs .ts .tsx .jsx)",
    )
    p_report.add_argument(
        "--no-exclude-node-modules",
        dest="exclude_node_modules",
        action="store_false",
        help="Do not exclude node_modules directories",
    )
    p_report.add_argument(
        "--resolve", default=None, help="Root for resolving paths (default: current directory)"
    )
    p_report.add_argument(
        "--no-omit-relative",
        dest="omit_relative",
        action="store_false",
        help="Keep scripts whose URL is a relative path",
    )
    p_report.add_argument(
        "--all",
        action="store_true",
        help="Report every file matching the include rules, loaded or not",
    )
    p_report.add_argument(
        "--wrapper-length",
        type=int,
        default=0,
        help="Bytes of module wrapper prefixed to executed JavaScript (default: 0)",
    )
    for name in ("statements", "functions", "branches", "lines"):
        p_report.add_argument(
            f"--watermark-{name}",
            type=_parse_watermark,
            default=None,
            metavar="LOW,HIGH",
            help=f"Low/high watermark for {name} "
                 "(stored on the report, not used for rendering)",
        )
    p_report.add_argument(
        "--show-missing", action="store_true", help="Show missing line numbers in text report"
    )
    p_report.set_defaults(func=cmd_report)

    # --- list ---
    p_list = subparsers.add_parser("list", help="List coverage dumps")
    p_list.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)
    if args.command == "report" and args.temp_directory is None:
        args.temp_directory = default_temp_directory()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
