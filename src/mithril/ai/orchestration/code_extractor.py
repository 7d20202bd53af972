"""Find replacement code inside free-form model output.

Model responses mix prose and code, so extraction is an ordered list of
named strategies.  For every candidate target the first strategy that yields
a :class:`ReplacementCandidate` wins; when none do, nothing is returned and
the caller shows the raw response instead of guessing.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Callable, Iterable, Optional, Sequence

from .types import (
    ReplacementCandidate,
    ReplacementOrigin,
    ReplacementTarget,
    ValidationResult,
)

__all__ = [
    "CodeExtractor",
    "Strategy",
    "DEFAULT_STRATEGIES",
    "match_explicit_marker",
    "match_numbered_chunk",
    "match_fenced_block",
    "match_prose_code",
    "content_classes",
    "color_tokens",
    "is_color_request",
    "validate_replacement",
    "NO_CHANGE_MESSAGE",
    "NO_COLOR_CHANGE_MESSAGE",
]

LOGGER = logging.getLogger(__name__)

Strategy = Callable[[str, int, Sequence[ReplacementTarget]], Optional[ReplacementCandidate]]

NO_CHANGE_MESSAGE = (
    "The model returned the same code without changes. "
    "Try being more specific about what you want changed."
)
NO_COLOR_CHANGE_MESSAGE = (
    "No color values were changed. Try asking more specifically like "
    "'change the primary color to #DC143C'."
)
EMPTY_MESSAGE = "The model returned an empty replacement, so nothing was changed."

_EXPLICIT_MARKER = re.compile(
    r"^[ \t]*REPLACE[ \t]+(?P<name>[^\n(]+?)[ \t]*\(Lines?[ \t]+(?P<start>\d+)[ \t]*-[ \t]*(?P<end>\d+)\)[ \t]*:?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_NUMBERED_MARKER = re.compile(
    r"^[ \t]*REPLACE[ \t]+CHUNK[ \t]+(?P<index>\d+)[ \t]*:?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_ANY_MARKER = re.compile(
    r"^[ \t]*REPLACE[ \t]+(?:CHUNK[ \t]+\d+|[^\n(]+?\(Lines?[ \t]+\d+)",
    re.IGNORECASE | re.MULTILINE,
)
_FENCE = re.compile(r"```[ \t]*(?P<lang>[\w+#.-]*)[ \t]*\n(?P<body>.*?)```", re.DOTALL)
_FENCE_LINE = re.compile(r"^\s*```")
_CHANGE_WORDS = re.compile(r"\b(refactored|updated|changed|modified)\b", re.IGNORECASE)
_CODE_START = re.compile(
    r"(:root\s*\{|function\s+\w+|class\s+\w+|def\s+\w+|<[a-zA-Z]+|\.[\w-]+\s*\{|^\s*[#\w-]+\s*\{)"
)
_CODE_PUNCTUATION = re.compile(r"[{}();=<>\[\]]")

_STYLE_PATTERNS = (
    re.compile(r":root\s*\{"),
    re.compile(r"<style\b", re.IGNORECASE),
    re.compile(r"--[\w-]+\s*:"),
    re.compile(r"^\s*[a-z-]+\s*:\s*[^;{}\n]+;\s*$", re.MULTILINE),
    re.compile(r"#[0-9a-fA-F]{3,8}\b"),
)
_DECLARATION_PATTERN = re.compile(
    r"\b(function|class|def|const|let|var|interface|struct|fn)\b|=>"
)
_MARKUP_PATTERN = re.compile(r"<[a-zA-Z][\w-]*(\s[^<>]*)?/?>")

_COLOR_REQUEST = re.compile(r"\b(red|blue|green|theme|colou?rs?)\b", re.IGNORECASE)
_COLOR_TOKEN = re.compile(r"#[0-9a-fA-F]{3,8}\b|\b(?:rgba?|hsla?)\([^)]*\)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Content inspection
# ---------------------------------------------------------------------------
def content_classes(text: str) -> frozenset[str]:
    """Return the coarse syntax families present in ``text``."""

    classes: set[str] = set()
    if any(pattern.search(text) for pattern in _STYLE_PATTERNS):
        classes.add("style")
    if _DECLARATION_PATTERN.search(text):
        classes.add("declaration")
    if _MARKUP_PATTERN.search(text):
        classes.add("markup")
    return frozenset(classes)


def _compatible(original: str, proposed: str) -> bool:
    original_classes = content_classes(original)
    if not original_classes:
        return False
    return bool(original_classes & content_classes(proposed))


def _looks_like_classifier_json(body: str) -> bool:
    stripped = body.strip()
    return stripped.startswith("{") and ('"intent"' in stripped or '"tool"' in stripped)


def _has_markers(text: str) -> bool:
    return _ANY_MARKER.search(text) is not None


def _marker_body(text: str, start: int) -> str:
    """Return the text after a marker up to the next marker or end of text."""

    following = _ANY_MARKER.search(text, start)
    end = following.start() if following else len(text)
    return _strip_fences(text[start:end])


def _strip_fences(body: str) -> str:
    fenced = _FENCE.search(body)
    if fenced is not None:
        return fenced.group("body").strip("\n").rstrip()
    lines = [line for line in body.strip("\n").split("\n") if not _FENCE_LINE.match(line)]
    return "\n".join(lines).strip("\n").rstrip()


def _same_file(name: str, target: ReplacementTarget) -> bool:
    wanted = os.path.basename(name.strip().strip("`'\"")).lower()
    return wanted == target.file_name.lower()


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
def match_explicit_marker(
    text: str, index: int, targets: Sequence[ReplacementTarget]
) -> ReplacementCandidate | None:
    """``REPLACE <file> (Lines a-b):`` naming the target by file and range."""

    target = targets[index]
    for match in _EXPLICIT_MARKER.finditer(text):
        if not _same_file(match.group("name"), target):
            continue
        start, end = int(match.group("start")), int(match.group("end"))
        if (start, end) != (target.start_line, target.end_line):
            continue
        body = _marker_body(text, match.end())
        if not body:
            continue
        return ReplacementCandidate(
            target=target,
            proposed_text=body,
            origin=ReplacementOrigin.EXPLICIT_MARKER,
            strategy="explicit_marker",
        )
    return None


def match_numbered_chunk(
    text: str, index: int, targets: Sequence[ReplacementTarget]
) -> ReplacementCandidate | None:
    """``REPLACE CHUNK n:`` naming the target by its 1-based position."""

    for match in _NUMBERED_MARKER.finditer(text):
        if int(match.group("index")) != index + 1:
            continue
        body = _marker_body(text, match.end())
        if not body:
            continue
        return ReplacementCandidate(
            target=targets[index],
            proposed_text=body,
            origin=ReplacementOrigin.EXPLICIT_MARKER,
            strategy="numbered_chunk",
        )
    return None


def match_fenced_block(
    text: str, index: int, targets: Sequence[ReplacementTarget]
) -> ReplacementCandidate | None:
    """First fenced block whose syntax family matches the single target."""

    if len(targets) != 1 or _has_markers(text):
        return None
    target = targets[index]
    blocks = [
        match.group("body").strip("\n").rstrip()
        for match in _FENCE.finditer(text)
        if match.group("body").strip() and not _looks_like_classifier_json(match.group("body"))
    ]
    if not content_classes(target.text):
        # unknown syntax family: only an unambiguous single block qualifies
        chosen = blocks[0] if len(blocks) == 1 else None
    else:
        chosen = next((body for body in blocks if _compatible(target.text, body)), None)
    if chosen is None:
        return None
    return ReplacementCandidate(
        target=target,
        proposed_text=chosen,
        origin=ReplacementOrigin.SINGLE_CHUNK_INFERENCE,
        strategy="fenced_block",
    )


def match_prose_code(
    text: str, index: int, targets: Sequence[ReplacementTarget]
) -> ReplacementCandidate | None:
    """Contiguous code-looking lines in a reply that says the code was changed."""

    if len(targets) != 1 or _has_markers(text) or not _CHANGE_WORDS.search(text):
        return None
    target = targets[index]
    lines = text.split("\n")
    start = next((i for i, line in enumerate(lines) if _CODE_START.search(line)), None)
    if start is None:
        return None
    collected: list[str] = []
    for line in lines[start:]:
        if _FENCE_LINE.match(line):
            continue
        if _is_prose(line):
            break
        collected.append(line)
    extracted = "\n".join(collected).strip("\n").rstrip()
    if len(extracted) <= 10 or _looks_like_classifier_json(extracted):
        return None
    if not _compatible(target.text, extracted):
        return None
    return ReplacementCandidate(
        target=target,
        proposed_text=extracted,
        origin=ReplacementOrigin.HEURISTIC_EXTRACTION,
        strategy="prose_extraction",
    )


def _is_prose(line: str) -> bool:
    stripped = line.strip()
    if not stripped or not stripped[0].isupper():
        return False
    if _CODE_PUNCTUATION.search(stripped):
        return False
    return len(stripped.split()) >= 3


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    match_explicit_marker,
    match_numbered_chunk,
    match_fenced_block,
    match_prose_code,
)


class CodeExtractor:
    """Composes extraction strategies with first-match-wins per target."""

    def __init__(self, strategies: Iterable[Strategy] | None = None) -> None:
        self._strategies = tuple(strategies) if strategies is not None else DEFAULT_STRATEGIES

    def extract(
        self, full_text: str, targets: Sequence[ReplacementTarget]
    ) -> list[ReplacementCandidate]:
        if not full_text or not full_text.strip() or not targets:
            return []
        candidates: list[ReplacementCandidate] = []
        for index in range(len(targets)):
            for strategy in self._strategies:
                candidate = strategy(full_text, index, targets)
                if candidate is not None:
                    LOGGER.debug(
                        "Extracted replacement for %s via %s",
                        targets[index].label,
                        candidate.strategy,
                    )
                    candidates.append(candidate)
                    break
        if not candidates:
            LOGGER.debug("No replacement candidate found for %d target(s)", len(targets))
        return candidates


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def is_color_request(request_text: str) -> bool:
    return bool(request_text) and _COLOR_REQUEST.search(request_text) is not None


def color_tokens(text: str) -> frozenset[str]:
    """Return the literal color values in ``text``, lower-cased and space-free."""

    return frozenset(
        re.sub(r"\s+", "", match.group(0)).lower() for match in _COLOR_TOKEN.finditer(text)
    )


def validate_replacement(candidate: ReplacementCandidate, request_text: str = "") -> ValidationResult:
    """Decide whether ``candidate`` may be written over its target."""

    original = candidate.target.text
    proposed = candidate.proposed_text
    if not proposed.strip():
        return ValidationResult(accepted=False, reason="empty", message=EMPTY_MESSAGE)
    if proposed == original or proposed.strip() == original.strip():
        return ValidationResult(accepted=False, reason="no_change", message=NO_CHANGE_MESSAGE)
    if is_color_request(request_text):
        before = color_tokens(original)
        after = color_tokens(proposed)
        if before == after:
            return ValidationResult(
                accepted=False,
                reason="no_color_change",
                message=NO_COLOR_CHANGE_MESSAGE,
                details={"colors": sorted(before)},
            )
        return ValidationResult(
            accepted=True,
            details={"removed": sorted(before - after), "added": sorted(after - before)},
        )
    return ValidationResult(accepted=True)
