from __future__ import annotations

import bisect
import re
from typing import NamedTuple

from pydantic import BaseModel

FENCED_CODE_RE = re.compile(r"^(```|~~~)[^\n]*\n.*?(?:^\1[ \t]*$|\Z)", re.MULTILINE | re.DOTALL)
INLINE_CODE_RE = re.compile(r"(`+)(?!`)(.+?)(?<!`)\1(?!`)")
MEDIA_EMBED_RE = re.compile(r"!\[\[[^\]\n]+\]\]")


class ConversionContext(BaseModel):
    source_file: str | None = None
    source_anchor: str | None = None
    vault_name: str = ""
    deep_link_scheme: str = "obsidian"


class LayerResult(NamedTuple):
    content: str
    warnings: list[str]
    change_count: int


class ProtectedSpans:
    """Sorted, non-overlapping [start, end) ranges that layers must not rewrite."""

    def __init__(self, spans: list[tuple[int, int]]):
        merged: list[tuple[int, int]] = []
        for start, end in sorted(spans):
            if merged and start <= merged[-1][1]:
                merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
            else:
                merged.append((start, end))
        self._spans = merged
        self._starts = [s for s, _ in merged]

    def __len__(self) -> int:
        return len(self._spans)

    def contains(self, pos: int) -> bool:
        i = bisect.bisect_right(self._starts, pos) - 1
        return i >= 0 and pos < self._spans[i][1]

    def overlap_end(self, start: int, end: int) -> int | None:
        """End of the first span that [start, end) runs into, or None."""
        i = bisect.bisect_right(self._starts, start) - 1
        if i >= 0 and start < self._spans[i][1]:
            return self._spans[i][1]
        i = bisect.bisect_left(self._starts, start)
        if i < len(self._starts) and self._starts[i] < end:
            return self._spans[i][1]
        return None

    def overlaps(self, start: int, end: int) -> bool:
        return self.overlap_end(start, end) is not None


def code_spans(content: str, *, include_media: bool = False, extra: list[tuple[int, int]] | None = None) -> ProtectedSpans:
    fences = [m.span() for m in FENCED_CODE_RE.finditer(content)]
    fenced = ProtectedSpans(fences)
    spans: list[tuple[int, int]] = [*fences, *(extra or [])]
    for m in INLINE_CODE_RE.finditer(content):
        if not fenced.contains(m.start()):
            spans.append(m.span())
    if include_media:
        spans.extend(m.span() for m in MEDIA_EMBED_RE.finditer(content))
    return ProtectedSpans(spans)


def sub_outside(pattern: re.Pattern, repl, content: str, protected: ProtectedSpans) -> tuple[str, int]:
    """re.sub that leaves matches overlapping a protected span untouched.

    `repl` receives the match and returns a replacement, or None to keep it.
    A match running into a protected span is dropped and the scan resumes
    after that span, so a delimiter inside code never pairs with one outside.
    """
    out: list[str] = []
    last = 0
    count = 0
    pos = 0
    while pos <= len(content):
        m = pattern.search(content, pos)
        if m is None:
            break
        pos = m.end() if m.end() > m.start() else m.start() + 1
        blocked = protected.overlap_end(m.start(), m.end())
        if blocked is not None:
            pos = max(blocked, m.start() + 1)
            continue
        replacement = repl(m)
        if replacement is None:
            continue
        out.append(content[last:m.start()])
        out.append(replacement)
        last = m.end()
        count += 1
    if not count:
        return content, 0
    out.append(content[last:])
    return "".join(out), count


class ConversionLayer:
    name = "layer"
    priority = 0

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def convert(self, content: str, context: ConversionContext) -> LayerResult:
        raise NotImplementedError
