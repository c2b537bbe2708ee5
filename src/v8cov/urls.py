"""Conversion between file:// URLs reported by V8 and filesystem paths."""

import os
import re
from urllib.parse import quote, unquote, urlsplit
from urllib.request import pathname2url, url2pathname

_FILE_URL_RE = re.compile(r"^file://")
_ENCODED_SEP_RE = re.compile(r"%2f|%5c", re.IGNORECASE)


def is_file_url(url):
    return bool(_FILE_URL_RE.match(url))


def to_sys_path(url):
    """Convert a file:// URL to a system-dependent path.

    Raises:
        ValueError: If the URL is not a local file URL or encodes a path
            separator inside a segment.
    """
    parts = urlsplit(url)
    if parts.scheme != "file":
        raise ValueError(f"Expected a file URL, got {url!r}")
    if parts.netloc not in ("", "localhost"):
        if os.name != "nt":
            raise ValueError(f"File URL host must be empty or 'localhost': {url!r}")
        # UNC path on Windows
        return url2pathname(f"//{parts.netloc}{parts.path}")
    if _ENCODED_SEP_RE.search(parts.path):
        raise ValueError(f"File URL path must not include encoded separators: {url!r}")
    if os.name == "nt":
        return url2pathname(parts.path)
    return unquote(parts.path)


def to_file_url(path):
    """Inverse of to_sys_path for absolute paths."""
    if os.name == "nt":
        return "file:" + pathname2url(os.path.abspath(path))
    # Same escaping Node.js applies in url.pathToFileURL()
    return "file://" + quote(os.path.abspath(path), safe="/!$&'()*+,;=:@[]^|~")
