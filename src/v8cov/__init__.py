"""Merge V8 (Node.js) coverage dumps into Istanbul coverage maps."""

from v8cov._version import __version__  # noqa: F401

_LAZY = {
    "Report": "v8cov.report",
    "create_report": "v8cov.report",
    "merge_process_covs": "v8cov.merge",
}


def __getattr__(name):
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["Report", "create_report", "merge_process_covs", "__version__"]
