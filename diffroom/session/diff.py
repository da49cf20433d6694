from __future__ import annotations

"""
Line-based diffs between two program outputs.

Outputs are arbitrary bytes. They are split on ``b"\\n"`` (so a trailing
newline shows up as a final empty line and nothing is lost) and decoded with
``surrogateescape``, which lets binary noise survive the trip through a text
patch and back.
"""

import difflib
import re
from typing import List, Sequence, Tuple

from .errors import PatchError

CONTEXT_LINES = 3
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def _split(data: bytes) -> List[str]:
    return [chunk.decode(_ENCODING, _ERRORS) for chunk in bytes(data).split(b"\n")]


def _join(lines: Sequence[str]) -> bytes:
    return "\n".join(lines).encode(_ENCODING, _ERRORS)


def diff(
    output_a: bytes,
    output_b: bytes,
    *,
    labels: Tuple[str, str] = ("a", "b"),
    context: int = CONTEXT_LINES,
) -> str:
    """Return a unified patch turning ``output_a`` into ``output_b``.

    Identical inputs give an empty string.
    """
    if output_a == output_b:
        return ""
    lines = difflib.unified_diff(
        _split(output_a),
        _split(output_b),
        fromfile=labels[0],
        tofile=labels[1],
        lineterm="",
        n=context,
    )
    return "\n".join(lines)


def _parse_hunks(patch: str) -> List[Tuple[int, int, List[str]]]:
    lines = patch.split("\n")
    if len(lines) >= 2 and lines[0].startswith("--- ") and lines[1].startswith("+++ "):
        lines = lines[2:]
    hunks: List[Tuple[int, int, List[str]]] = []
    for line in lines:
        match = _HUNK_RE.match(line)
        if match:
            start = int(match.group(1))
            length = int(match.group(2)) if match.group(2) is not None else 1
            hunks.append((start, length, []))
            continue
        if not hunks:
            raise PatchError(f"patch line outside of a hunk: {line!r}")
        if not line or line[0] not in " -+":
            raise PatchError(f"malformed patch line: {line!r}")
        hunks[-1][2].append(line)
    return hunks


def apply_patch(output_a: bytes, patch: str) -> bytes:
    """Apply a patch produced by :func:`diff` and return the other side."""
    if not patch:
        return bytes(output_a)
    source = _split(output_a)
    result: List[str] = []
    cursor = 0
    for start, length, body in _parse_hunks(patch):
        # difflib reports an empty old range by the line *before* it.
        offset = start - 1 if length else start
        if offset < cursor or offset > len(source):
            raise PatchError(f"hunk at line {start} does not fit the input")
        result.extend(source[cursor:offset])
        cursor = offset
        for line in body:
            tag, text = line[0], line[1:]
            if tag == "+":
                result.append(text)
                continue
            if cursor >= len(source) or source[cursor] != text:
                raise PatchError(f"patch does not match input at line {cursor + 1}")
            if tag == " ":
                result.append(text)
            cursor += 1
    result.extend(source[cursor:])
    return _join(result)


__all__ = ["diff", "apply_patch", "CONTEXT_LINES"]
