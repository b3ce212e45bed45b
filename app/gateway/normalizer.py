"""Response Normalizer: pulls structured JSON out of free-form model text.

Providers wrap JSON inconsistently, even when told not to: fenced code
blocks with or without a language tag, a sentence of prose before or after,
or both. Extraction is strict-then-scan:

  1. Strip a single outer fenced block (any language tag)
  2. Strict json.loads of the remaining trimmed text
  3. Scan for balanced top-level {...} / [...] spans and decode each in turn
  4. Raise ExtractionError; never guess at malformed data

Callers decide what to do with an ExtractionError (show raw text, use a
default payload); see `extract_structured_or`.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger(__name__)

_FENCE = "```"

# Language tag right after the opening fence: ```json\n (tag optional)
_FENCE_TAG = re.compile(r"[\w+\-.]*[ \t]*\n?")

_OPENERS = {"{": "}", "[": "]"}


class ExtractionError(ValueError):
    """Raised when no structured value can be decoded from provider text."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


def strip_outer_fence(text: str) -> str:
    """Return the body of a single outer fenced block, or the text unchanged."""
    stripped = text.strip()
    if len(stripped) < 2 * len(_FENCE) or not (stripped.startswith(_FENCE) and stripped.endswith(_FENCE)):
        return stripped
    inner = stripped[len(_FENCE) : -len(_FENCE)]
    tag = _FENCE_TAG.match(inner)
    return inner[tag.end() :].strip()


def _balanced_spans(text: str) -> Iterator[str]:
    """Yield balanced top-level {...} / [...] substrings, left to right.

    Single pass. String literals inside a span are skipped (with escapes), so
    braces inside quoted values do not affect nesting. When an opener never
    closes, or a closer does not match, the spans completed inside it are
    yielded instead.
    """
    # Each open level: [expected closer, start index, completed child spans]
    stack: list[list] = []
    in_string = False
    escaped = False

    def flush() -> Iterator[str]:
        for _, _, children in stack:
            for start, end in children:
                yield text[start:end]
        stack.clear()

    for i, ch in enumerate(text):
        if not stack:
            if ch in _OPENERS:
                stack.append([_OPENERS[ch], i, []])
            continue

        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append([_OPENERS[ch], i, []])
        elif ch == stack[-1][0]:
            _, start, _ = stack.pop()
            if stack:
                stack[-1][2].append((start, i + 1))
            else:
                yield text[start : i + 1]
        elif ch in ("}", "]"):
            # Mismatched closer ends every open level
            yield from flush()

    yield from flush()


def _decode(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except RecursionError as exc:
        raise ValueError("Nesting too deep to decode") from exc


def extract_structured(raw_text: str) -> Any:
    """Decode the structured (JSON) payload embedded in provider text.

    Raises:
        ExtractionError: if nothing decodes cleanly
    """
    if not raw_text or not raw_text.strip():
        raise ExtractionError("Empty text", raw_text=raw_text or "")

    candidate = strip_outer_fence(raw_text)

    try:
        return _decode(candidate)
    except ValueError:
        pass

    for span in _balanced_spans(candidate):
        try:
            value = _decode(span)
        except ValueError:
            continue
        logger.debug("Extracted structured value from a %d-char span of %d-char text", len(span), len(raw_text))
        return value

    raise ExtractionError("No structured value found in text", raw_text=raw_text)


def extract_structured_or(raw_text: str, default: Any) -> Any:
    """Like extract_structured, but return `default` instead of raising."""
    try:
        return extract_structured(raw_text)
    except ExtractionError:
        logger.info("Structured extraction failed; using default payload")
        return default
