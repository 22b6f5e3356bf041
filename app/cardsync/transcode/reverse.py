"""Anki field HTML back to local markdown, used when importing notes."""

from __future__ import annotations

import html
import re

_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"<br\s*/?>", re.I), "\n"),
    (re.compile(r"</p>", re.I), "\n\n"),
    (re.compile(r"<p[^>]*>", re.I), ""),
    (re.compile(r"</div>\s*<div[^>]*>", re.I), "\n"),
    (re.compile(r"<(?:b|strong)>(.*?)</(?:b|strong)>", re.I | re.S), r"**\1**"),
    (re.compile(r"<(?:i|em)>(.*?)</(?:i|em)>", re.I | re.S), r"*\1*"),
    (re.compile(r"<u>(.*?)</u>", re.I | re.S), r"==\1=="),
    (re.compile(r"<mark[^>]*>(.*?)</mark>", re.I | re.S), r"==\1=="),
    (re.compile(r"<(?:del|s)>(.*?)</(?:del|s)>", re.I | re.S), r"~~\1~~"),
    (re.compile(r"<code>(.*?)</code>", re.I | re.S), r"`\1`"),
    (re.compile(r"<img[^>]*\bsrc=\"([^\"]+)\"[^>]*>", re.I), r"![[\1]]"),
    (re.compile(r"\[sound:([^\]]+)\]"), r"![[\1]]"),
    (re.compile(r"\\\[\s*(.+?)\s*\\\]", re.S), r"$$\1$$"),
    (re.compile(r"\\\((.+?)\\\)", re.S), r"$\1$"),
]
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def html_to_markdown(value: str) -> str:
    if not value:
        return ""
    text = value
    for pattern, repl in _RULES:
        text = pattern.sub(repl, text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def referenced_media(value: str) -> list[str]:
    """Filenames an Anki field points at through <img src> or [sound:]."""
    names: list[str] = []
    for m in re.finditer(r"<img[^>]*\bsrc=\"([^\"]+)\"", value or "", re.I):
        names.append(m.group(1))
    for m in re.finditer(r"\[sound:([^\]]+)\]", value or ""):
        names.append(m.group(1))
    return [n for n in dict.fromkeys(names) if "://" not in n and not n.startswith("data:")]
