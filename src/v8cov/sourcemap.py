"""Minimal source map (revision 3) consumer.

Lines are 1-based and columns 0-based, matching the conventions used by
the converter. Only standard (non-indexed) maps are supported.
"""

import bisect

GREATEST_LOWER_BOUND = 1
LEAST_UPPER_BOUND = 2

_BASE64 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE64_VALUES = {ch: i for i, ch in enumerate(_BASE64)}

_NO_POSITION = {"source": None, "line": None, "column": None, "name": None}


def decode_vlq(segment):
    """Decode one base64 VLQ segment into a list of ints."""
    values = []
    shift = 0
    value = 0
    for ch in segment:
        try:
            digit = _BASE64_VALUES[ch]
        except KeyError:
            raise ValueError(f"Invalid base64 VLQ character {ch!r} in {segment!r}") from None
        value += (digit & 31) << shift
        if digit & 32:
            shift += 5
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        shift = 0
        value = 0
    if shift:
        raise ValueError(f"Truncated base64 VLQ segment {segment!r}")
    return values


def decode_mappings(mappings, sources, names=()):
    """Return mapping dicts sorted by generated position."""
    result = []
    source_index = orig_line = orig_column = name_index = 0
    for line_index, line in enumerate(mappings.split(";")):
        gen_column = 0
        for segment in line.split(","):
            if not segment:
                continue
            fields = decode_vlq(segment)
            gen_column += fields[0]
            mapping = {
                "generatedLine": line_index + 1,
                "generatedColumn": gen_column,
                "source": None,
                "originalLine": None,
                "originalColumn": None,
                "name": None,
            }
            if len(fields) >= 4:
                source_index += fields[1]
                orig_line += fields[2]
                orig_column += fields[3]
                mapping["source"] = sources[source_index] if source_index < len(sources) else None
                mapping["originalLine"] = orig_line + 1
                mapping["originalColumn"] = orig_column
                if len(fields) >= 5:
                    name_index += fields[4]
                    if name_index < len(names):
                        mapping["name"] = names[name_index]
            result.append(mapping)
    result.sort(key=lambda m: (m["generatedLine"], m["generatedColumn"]))
    return result


class SourceMapConsumer:
    def __init__(self, sourcemap):
        if "sections" in sourcemap:
            raise ValueError("Indexed source maps are not supported")
        self.file = sourcemap.get("file")
        self.source_root = sourcemap.get("sourceRoot") or ""
        self.sources = list(sourcemap.get("sources") or [])
        self.sources_content = sourcemap.get("sourcesContent")
        self.names = list(sourcemap.get("names") or [])

        self._generated = decode_mappings(sourcemap.get("mappings", ""), self.sources, self.names)
        self._generated_keys = [(m["generatedLine"], m["generatedColumn"]) for m in self._generated]

        original = [m for m in self._generated if m["source"] is not None]
        original.sort(key=lambda m: (m["source"], m["originalLine"], m["originalColumn"]))
        self._original = original
        self._original_keys = [
            (m["source"], m["originalLine"], m["originalColumn"]) for m in original
        ]

    def original_position_for(self, line, column, bias=GREATEST_LOWER_BOUND):
        key = (line, column)
        if bias == GREATEST_LOWER_BOUND:
            index = bisect.bisect_right(self._generated_keys, key) - 1
        else:
            index = bisect.bisect_left(self._generated_keys, key)
        if not 0 <= index < len(self._generated):
            return dict(_NO_POSITION)
        mapping = self._generated[index]
        if mapping["generatedLine"] != line or mapping["source"] is None:
            return dict(_NO_POSITION)
        return {
            "source": mapping["source"],
            "line": mapping["originalLine"],
            "column": mapping["originalColumn"],
            "name": mapping["name"],
        }

    def generated_position_for(self, source, line, column, bias=LEAST_UPPER_BOUND):
        key = (source, line, column)
        if bias == GREATEST_LOWER_BOUND:
            index = bisect.bisect_right(self._original_keys, key) - 1
        else:
            index = bisect.bisect_left(self._original_keys, key)
        if not 0 <= index < len(self._original):
            return {"line": None, "column": None}
        mapping = self._original[index]
        if mapping["source"] != source:
            return {"line": None, "column": None}
        return {"line": mapping["generatedLine"], "column": mapping["generatedColumn"]}

    def original_position_try_both(self, line, column):
        original = self.original_position_for(line, column, GREATEST_LOWER_BOUND)
        if original["line"] is None:
            return self.original_position_for(line, column, LEAST_UPPER_BOUND)
        return original

    def original_end_position_for(self, line, column):
        """Original position where a generated span ending at (line, column) ends.

        Mappings describe starts, so look up the position just before the end,
        then step to the next mapped token to find where that token ends in
        the original source.
        """
        before_end = self.original_position_try_both(line, max(column - 1, 1))
        if before_end["source"] is None:
            return None
        mapping = self.generated_position_for(
            before_end["source"], before_end["line"], before_end["column"], LEAST_UPPER_BOUND
        )
        if mapping["line"] is None:
            return None
        after_end = self.original_position_for(
            mapping["line"], mapping["column"], GREATEST_LOWER_BOUND
        )
        if after_end["line"] is None:
            return None
        return after_end if after_end["line"] == before_end["line"] else before_end
