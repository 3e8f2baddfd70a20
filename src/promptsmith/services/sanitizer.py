"""Strip formatting artifacts that providers wrap around generated prompts.

``clean_ai_response`` is applied to accumulated streamed text on every chunk
and again to the final text, so it must be idempotent. Each rule only ever
removes text from the edges; the loop runs until nothing changes.
"""

from __future__ import annotations

import re
from typing import List

# ```markdown / ```xml / ``` on its own line at the very start.
_LEADING_FENCE = re.compile(r"\A```[\w+\-.]*[ \t]*(?:\n|\Z)")
_TRAILING_FENCE = re.compile(r"(?:\A|\n)[ \t]*```[ \t]*\Z")

_PREAMBLE_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r"^以下是.{0,60}[：:]\s*$"),
    re.compile(r"^这是.{0,60}[：:]\s*$"),
    re.compile(r"^(?:here is|here's|below is)\b.{0,80}:\s*$", re.IGNORECASE),
    re.compile(r"^(?:sure|certainly|of course)\b.{0,80}:\s*$", re.IGNORECASE),
]

_POSTAMBLE_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r"^希望.{0,60}(?:帮助|有用).{0,20}$"),
    re.compile(r"^如(?:果|需).{0,40}(?:请|随时).{0,40}$"),
    re.compile(r"^(?:let me know if|i hope this helps|hope this helps|feel free to)\b.*$", re.IGNORECASE),
]


def _strip_fences(text: str) -> str:
    text = _LEADING_FENCE.sub("", text, count=1)
    return _TRAILING_FENCE.sub("", text, count=1)


def _strip_preamble(text: str) -> str:
    first, sep, rest = text.partition("\n")
    if sep and any(p.match(first.strip()) for p in _PREAMBLE_PATTERNS):
        return rest
    return text


def _strip_postamble(text: str) -> str:
    head, sep, last = text.rpartition("\n")
    if sep and any(p.match(last.strip()) for p in _POSTAMBLE_PATTERNS):
        return head
    return text


def _clean_once(text: str) -> str:
    text = text.strip()
    text = _strip_fences(text)
    text = _strip_preamble(text.strip())
    text = _strip_postamble(text.strip())
    return text.strip()


def clean_ai_response(text: str) -> str:
    """Return ``text`` without surrounding code fences and chatty preamble/postamble."""
    if not text:
        return ""
    current = text
    while True:
        cleaned = _clean_once(current)
        if cleaned == current:
            return cleaned
        current = cleaned
