"""Stack-based scanner for JSON spans embedded in model output."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = frozenset(_OPENERS.values())


@dataclass(frozen=True, slots=True)
class JsonSpan:
    """Half-open `[start, end)` slice of the scanned text."""

    start: int
    end: int
    complete: bool


def scan_json_span(text: str) -> JsonSpan | None:
    """Return the first balanced top-level object/array span, if any.

    Brackets inside string literals (including escaped quotes) are ignored,
    so prose before or after the JSON and code fences around it do not
    affect the result.
    """

    for span in iter_json_spans(text):
        if span.complete:
            return span
    return None


def iter_json_spans(text: str) -> Iterator[JsonSpan]:  # noqa: C901, PLR0912
    """Yield balanced spans from left to right in a single pass.

    A candidate broken by a mismatched closer still yields the balanced
    values nested inside it; scanning resumes after that closer. When the
    text ends with brackets open, a final span with ``complete=False`` is
    yielded.
    """

    # (start, expected closer) for every open bracket of the current candidate
    stack: list[tuple[int, str]] = []
    # outermost balanced spans closed inside the current candidate
    nested: list[JsonSpan] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if not stack:
            if char in _OPENERS:
                stack.append((index, _OPENERS[char]))
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append((index, _OPENERS[char]))
        elif char in _CLOSERS:
            start, expected = stack.pop()
            if char != expected:
                yield from nested
                nested.clear()
                stack.clear()
                continue
            if not stack:
                nested.clear()
                yield JsonSpan(start=start, end=index + 1, complete=True)
                continue
            while nested and nested[-1].start > start:
                nested.pop()
            nested.append(JsonSpan(start=start, end=index + 1, complete=True))
    if stack:
        yield JsonSpan(start=stack[0][0], end=len(text), complete=False)
