from __future__ import annotations

import html
import re
from urllib.parse import quote

from cardsync.transcode.base import ConversionContext, ConversionLayer, LayerResult, ProtectedSpans, code_spans, sub_outside

BLOCK_MATH_RE = re.compile(r"\$\$(.+?)\$\$", re.DOTALL)
# Opening $ must hug its formula, closing $ must not be followed by a digit ("$5 and $10").
INLINE_MATH_RE = re.compile(r"(?<![\\$])\$(?![\s$])([^$\n]+?)(?<![\s\\])\$(?!\d)")
AMOUNT_PREFIX_RE = re.compile(r"^\d+(?:[.,]\d+)*")
PROSE_AFTER_AMOUNT_RE = re.compile(r"^\s+[A-Za-z]{2,}")
CURRENCY_LOOKAHEAD = 20
CONVERTED_MATH_RE = re.compile(r"\\\(.+?\\\)|\\\[.+?\\\]", re.DOTALL)

WIKILINK_RE = re.compile(r"(?<!!)\[\[([^\[\]\n]+)\]\]")
LINK_STYLE = "color:#667eea;text-decoration:none"

CALLOUT_RE = re.compile(r"^>[ \t]*\[!(\w+)\][+-]?([^\n]*)(?:\n|$)((?:>.*(?:\n|$))*)", re.MULTILINE)
CALLOUT_TYPES: dict[str, tuple[str, str, str]] = {
    "note": ("\U0001F4D8", "#4A9EFF", "Note"),
    "info": ("\u2139\ufe0f", "#4A9EFF", "Info"),
    "tip": ("\U0001F4A1", "#10B981", "Tip"),
    "success": ("\u2705", "#10B981", "Success"),
    "warning": ("\u26a0\ufe0f", "#F59E0B", "Warning"),
    "danger": ("\u274c", "#EF4444", "Danger"),
    "error": ("\u2757", "#EF4444", "Error"),
    "question": ("\u2753", "#8B5CF6", "Question"),
    "quote": ("\U0001F4AC", "#6B7280", "Quote"),
    "abstract": ("\U0001F4CB", "#06B6D4", "Abstract"),
    "summary": ("\U0001F4DD", "#06B6D4", "Summary"),
}

HIGHLIGHT_RE = re.compile(r"==(?=\S)([^\n]+?)(?<=\S)==")
STRIKE_RE = re.compile(r"~~(?=\S)([^\n]+?)(?<=\S)~~")
MARK_STYLE = "background-color:#FEF08A;padding:0 2px;border-radius:2px"


def _hex_to_rgba(color: str, alpha: float) -> str:
    raw = color.lstrip("#")
    r, g, b = (int(raw[i:i + 2], 16) for i in (0, 2, 4))
    return f"rgba({r}, {g}, {b}, {alpha})"


class MathLayer(ConversionLayer):
    """`$$x$$` -> `\\[x\\]` and `$x$` -> `\\(x\\)`, MathJax delimiters used by Anki."""

    name = "math"
    priority = 100

    def __init__(self, enabled: bool = True, detect_currency: bool = True):
        super().__init__(enabled)
        self.detect_currency = detect_currency

    def convert(self, content: str, context: ConversionContext) -> LayerResult:
        if "$" not in content:
            return LayerResult(content, [], 0)
        warnings: list[str] = []

        def block(m: re.Match) -> str | None:
            formula = m.group(1).strip()
            if not formula:
                return None
            return f"\\[\n{formula}\n\\]"

        content, blocks = sub_outside(BLOCK_MATH_RE, block, content, code_spans(content))

        def inline(m: re.Match) -> str | None:
            formula = m.group(1)
            if self.detect_currency and self._looks_like_currency(formula):
                warnings.append(f"math_currency_skipped: ${formula[:CURRENCY_LOOKAHEAD]}")
                return None
            return f"\\({formula}\\)"

        content, inlines = sub_outside(INLINE_MATH_RE, inline, content, code_spans(content))
        return LayerResult(content, warnings, blocks + inlines)

    @staticmethod
    def _looks_like_currency(formula: str) -> bool:
        amount = AMOUNT_PREFIX_RE.match(formula)
        if not amount:
            return False
        rest = formula[amount.end():]
        if len(formula) > CURRENCY_LOOKAHEAD:
            return True
        return bool(PROSE_AFTER_AMOUNT_RE.match(rest))


class WikiLinkLayer(ConversionLayer):
    name = "wikilink"
    priority = 80

    def __init__(self, enabled: bool = True, mode: str = "deep_link"):
        super().__init__(enabled)
        self.mode = mode

    def convert(self, content: str, context: ConversionContext) -> LayerResult:
        if "[[" not in content:
            return LayerResult(content, [], 0)
        warnings: list[str] = []
        deep_link = self.mode == "deep_link"
        if deep_link and not context.vault_name:
            warnings.append("wikilink_vault_missing: falling back to plain text")
            deep_link = False

        def repl(m: re.Match) -> str:
            target, _, alias = m.group(1).partition("|")
            path, _, heading = target.strip().partition("#")
            path, heading = path.strip(), heading.strip()
            display = alias.strip() or (f"{path}#{heading}" if path and heading else path or heading)
            text = html.escape(display, quote=False)
            if not deep_link:
                return text
            url = self.build_url(context, path or (context.source_file or ""), heading)
            return f'<a href="{html.escape(url)}" style="{LINK_STYLE}">{text}</a>'

        content, count = sub_outside(WIKILINK_RE, repl, content, code_spans(content, include_media=True))
        return LayerResult(content, warnings, count)

    @staticmethod
    def build_url(context: ConversionContext, path: str, heading: str = "") -> str:
        url = f"{context.deep_link_scheme}://open?vault={quote(context.vault_name, safe='')}&file={quote(path, safe='')}"
        if heading:
            url += f"#{quote(heading, safe='')}"
        return url


class CalloutLayer(ConversionLayer):
    """`> [!tip] Title` blocks -> inline-styled div blocks."""

    name = "callout"
    priority = 70

    def convert(self, content: str, context: ConversionContext) -> LayerResult:
        if "[!" not in content:
            return LayerResult(content, [], 0)
        warnings: list[str] = []

        def repl(m: re.Match) -> str:
            kind = m.group(1).lower()
            if kind not in CALLOUT_TYPES:
                warnings.append(f"callout_unknown_type: {kind}")
            icon, color, label = CALLOUT_TYPES.get(kind, CALLOUT_TYPES["note"])
            title = m.group(2).strip() or label
            lines = [re.sub(r"^>\s?", "", line) for line in m.group(3).split("\n")]
            body = "<br>".join(line for line in lines if line.strip())
            block = (
                f'<div class="callout callout-{kind}" style="padding:12px 16px;margin:8px 0;'
                f'border-left:4px solid {color};background:{_hex_to_rgba(color, 0.1)};border-radius:4px">'
                f'<div class="callout-title" style="font-weight:600;margin-bottom:4px;color:{color}">'
                f"{icon} {html.escape(title, quote=False)}</div>"
                f'<div class="callout-content">{body}</div></div>'
            )
            return block + ("\n" if m.group(0).endswith("\n") else "")

        content, count = sub_outside(CALLOUT_RE, repl, content, code_spans(content))
        return LayerResult(content, warnings, count)


class HighlightLayer(ConversionLayer):
    name = "highlight"
    priority = 60

    def __init__(self, enabled: bool = True, style: str = "underline"):
        super().__init__(enabled)
        self.style = style

    def _wrap(self, text: str) -> str:
        if self.style == "bold":
            return f"<b>{text}</b>"
        if self.style == "mark":
            return f'<mark style="{MARK_STYLE}">{text}</mark>'
        return f"<u>{text}</u>"

    def convert(self, content: str, context: ConversionContext) -> LayerResult:
        if "==" not in content and "~~" not in content:
            return LayerResult(content, [], 0)

        def protected_now(text: str) -> ProtectedSpans:
            return code_spans(text, extra=[m.span() for m in CONVERTED_MATH_RE.finditer(text)])

        content, highlights = sub_outside(HIGHLIGHT_RE, lambda m: self._wrap(m.group(1)), content, protected_now(content))
        content, strikes = sub_outside(STRIKE_RE, lambda m: f"<del>{m.group(1)}</del>", content, protected_now(content))
        return LayerResult(content, [], highlights + strikes)
