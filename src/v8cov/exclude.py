"""Include/exclude glob rules deciding which files take part in a report.

Patterns are matched against the path relative to ``cwd`` using forward
slashes. Supported syntax: ``**`` (any number of directories), ``*``, ``?``,
``[...]`` classes and ``{a,b}`` alternatives. Wildcards match dot-files.
A leading ``!`` in an exclude pattern re-includes matching files.
"""

import os
import re

DEFAULT_EXTENSION = [".js", ".cjs", ".mjs", ".ts", ".tsx", ".jsx"]

DEFAULT_EXCLUDE = [
    "coverage/**",
    "packages/*/test/**",
    "test/**",
    "test{,-*}.js",
    "**/*{.,-}test.js",
    "**/__tests__/**",
    "**/{ava,babel,nyc}.config.{js,cjs,mjs}",
    "**/jest.config.{js,cjs,mjs,ts}",
    "**/{karma,rollup,webpack}.config.js",
    "**/.{eslint,mocha}rc.{js,cjs}",
]

NODE_MODULES_PATTERN = "**/node_modules/**"


def _expand_braces(pattern):
    """Expand the first {a,b} group recursively: 'x{a,b}y' -> ['xay', 'xby']."""
    depth = 0
    start = None
    for i, ch in enumerate(pattern):
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                body = pattern[start + 1:i]
                options = _split_top_level(body)
                if len(options) < 2:
                    continue
                prefix, suffix = pattern[:start], pattern[i + 1:]
                result = []
                for option in options:
                    result.extend(_expand_braces(prefix + option + suffix))
                return result
    return [pattern]


def _split_top_level(body):
    options = []
    depth = 0
    current = ""
    for ch in body:
        if ch == "," and depth == 0:
            options.append(current)
            current = ""
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        current += ch
    options.append(current)
    return options


def _translate_segment(segment):
    out = []
    i = 0
    n = len(segment)
    while i < n:
        ch = segment[i]
        if ch == "*":
            while i + 1 < n and segment[i + 1] == "*":
                i += 1
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            end = segment.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = segment[i + 1:end]
                if body[:1] in ("!", "^"):
                    body = "^" + body[1:]
                out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


def glob_to_regex(pattern):
    """Translate one brace-free glob pattern into an anchored regex string."""
    segments = pattern.split("/")
    pieces = []
    prev_globstar = False
    last = len(segments) - 1
    for index, segment in enumerate(segments):
        if segment == "**":
            if index == 0:
                pieces.append(".*" if index == last else "(?:.*/)?")
            else:
                pieces.append("(?:/.*)?" if index == last else "(?:/.*)?/")
            prev_globstar = True
            continue
        if index > 0 and not prev_globstar:
            pieces.append("/")
        pieces.append(_translate_segment(segment))
        prev_globstar = False
    return "(?s:" + "".join(pieces) + r")\Z"


def _compile(patterns):
    compiled = []
    for pattern in patterns:
        for expanded in _expand_braces(pattern):
            compiled.append(re.compile(glob_to_regex(expanded)))
    return compiled


def prep_glob_patterns(patterns):
    """Make 'dir' also match 'dir/**' and '**/x' also match 'x'."""
    result = []
    for pattern in patterns:
        if not pattern.endswith("**"):
            result.append(pattern.rstrip("/") + "/**")
        if pattern.startswith("**/"):
            result.append(pattern[3:])
        result.append(pattern)
    return result


class Exclude:
    """Decides which files are instrumented, and lists them for --all."""

    def __init__(self, include=None, exclude=None, extension=None, cwd=None,
                 relative_path=True, exclude_node_modules=True):
        self.cwd = os.path.abspath(cwd or os.getcwd())
        self.relative_path = relative_path
        self.extension = DEFAULT_EXTENSION if extension is None else list(extension)

        if isinstance(include, str):
            include = [include]
        self.include = prep_glob_patterns(include) if include else None

        if isinstance(exclude, str):
            exclude = [exclude]
        exclude = list(DEFAULT_EXCLUDE if exclude is None else exclude)
        if exclude_node_modules and NODE_MODULES_PATTERN not in exclude:
            exclude.append(NODE_MODULES_PATTERN)
        self.exclude_negated = [p[1:] for p in exclude if p.startswith("!")]
        self.exclude = prep_glob_patterns([p for p in exclude if not p.startswith("!")])

        self._include_re = _compile(self.include) if self.include else None
        self._exclude_re = _compile(self.exclude)
        self._exclude_negated_re = _compile(self.exclude_negated)

    def should_instrument(self, filename):
        if self.extension and not any(filename.endswith(ext) for ext in self.extension):
            return False

        path_to_check = filename
        if self.relative_path:
            relative = os.path.relpath(filename, self.cwd)
            # Files outside of cwd are never instrumented
            if relative.startswith(".."):
                return False
            path_to_check = relative
        path_to_check = path_to_check.replace(os.sep, "/")

        def matches(regex):
            return regex.match(path_to_check) is not None

        if self._include_re is not None and not any(map(matches, self._include_re)):
            return False
        if any(map(matches, self._exclude_re)):
            return any(map(matches, self._exclude_negated_re))
        return True

    def glob_sync(self, cwd=None):
        """Return paths (relative to cwd) of every file passing the rules."""
        root = os.path.abspath(cwd or self.cwd)
        prune = not self.exclude_negated
        found = []
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = os.path.relpath(dirpath, root)
            rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/") + "/"
            if prune:
                # Don't descend into excluded trees such as node_modules
                dirnames[:] = [
                    d for d in dirnames
                    if not any(r.match(rel_dir + d) for r in self._exclude_re)
                ]
            dirnames.sort()
            for name in sorted(filenames):
                rel_file = rel_dir + name
                if self.should_instrument(os.path.join(root, rel_file)):
                    found.append(rel_file)
        return found
