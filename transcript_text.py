"""Pure text helpers for reconciling streaming transcripts.

Speech backends restate, extend and sometimes rewrite what they already
reported.  Everything in here works on normalized text and answers one
question: which part of a new snapshot has not been delivered yet.
None of these functions raise; "no determinable delta" is returned as
an empty string.
"""

from __future__ import annotations

import re

MERGE_OVERLAP_WORDS = 14
LENIENT_OVERLAP_WORDS = 16
STRICT_OVERLAP_WORDS = 24
STRICT_MIN_OVERLAP_WORDS = 2

_WHITESPACE_RE = re.compile(r"\s+")
_OUTER_QUOTES_RE = re.compile("^[`\"'“”]+|[`\"'“”]+$")

_WORD_END_RE = re.compile(r"[A-Za-z0-9)]")
_WORD_START_RE = re.compile(r"[A-Za-z0-9(]")
_UPPER_RE = re.compile(r"[A-Z]")
_SENTENCE_END_RE = re.compile(r"[.!?]$")
_CLAUSE_END_RE = re.compile(r"[.!?,;:]")


def normalize_transcript(value: object) -> str:
    """Collapse whitespace, strip wrapping quotes and trim."""
    text = _WHITESPACE_RE.sub(" ", str(value or "")).strip()
    # Quotes and spaces can be nested (`" 'hi' "`), peel until stable.
    while True:
        stripped = _OUTER_QUOTES_RE.sub("", text).strip()
        if stripped == text:
            return text
        text = stripped


def _words(text: str) -> list[str]:
    return text.split(" ") if text else []


def _join_lower(words: list[str]) -> str:
    return " ".join(words).lower()


def merge_transcript_chunks(existing: str, incoming: str) -> str:
    """Merge two possibly overlapping snapshots of the same utterance.

    The longest suffix of ``existing`` that equals (case-insensitively) a
    prefix of ``incoming`` is spliced once; with no overlap the two are
    concatenated.
    """
    prev = normalize_transcript(existing)
    nxt = normalize_transcript(incoming)
    if not prev:
        return nxt
    if not nxt:
        return prev
    if prev == nxt:
        return prev
    if nxt.startswith(prev) or prev in nxt:
        return nxt
    if prev.startswith(nxt):
        return prev

    prev_words = _words(prev)
    next_words = _words(nxt)
    max_overlap = min(MERGE_OVERLAP_WORDS, len(prev_words), len(next_words))
    for size in range(max_overlap, 0, -1):
        if _join_lower(prev_words[-size:]) == _join_lower(next_words[:size]):
            return normalize_transcript(" ".join(prev_words + next_words[size:]))

    return normalize_transcript(f"{prev} {nxt}")


def compute_append_only_delta(previous: str, next_text: str) -> str:
    """Lenient delta used for live typing.

    Tries, in order: plain prefix extension, the rightmost occurrence of
    ``previous`` inside ``next_text``, then a word-level match of the tail of
    ``previous`` anywhere in ``next_text``.  A rewritten transcript yields
    ``""`` rather than a replay of the full text.
    """
    prev = normalize_transcript(previous)
    curr = normalize_transcript(next_text)
    if not curr:
        return ""
    if not prev:
        return curr
    if curr == prev:
        return ""
    if curr.startswith(prev):
        return curr[len(prev):]

    exact_idx = curr.lower().rfind(prev.lower())
    if exact_idx >= 0:
        return curr[exact_idx + len(prev):]

    prev_words = _words(prev)
    curr_words = _words(curr)
    max_overlap = min(LENIENT_OVERLAP_WORDS, len(prev_words), len(curr_words))
    for size in range(max_overlap, 0, -1):
        prev_tail = _join_lower(prev_words[-size:])
        for start in range(0, len(curr_words) - size + 1):
            if _join_lower(curr_words[start:start + size]) == prev_tail:
                return normalize_transcript(" ".join(curr_words[start + size:]))

    return ""


def extract_strict_suffix(previous_raw: str, next_raw: str) -> str:
    """Strict delta used at native segment boundaries.

    Only a prefix extension or a suffix/prefix overlap of at least two words
    counts; anything else is treated as an ambiguous rewrite.
    """
    prev = normalize_transcript(previous_raw)
    nxt = normalize_transcript(next_raw)
    if not nxt:
        return ""
    if not prev:
        return nxt
    if nxt == prev:
        return ""
    if nxt.startswith(prev):
        return normalize_transcript(nxt[len(prev):])

    prev_words = _words(prev)
    next_words = _words(nxt)
    max_overlap = min(STRICT_OVERLAP_WORDS, len(prev_words), len(next_words))
    for size in range(max_overlap, STRICT_MIN_OVERLAP_WORDS - 1, -1):
        if _join_lower(prev_words[-size:]) == _join_lower(next_words[:size]):
            return normalize_transcript(" ".join(next_words[size:]))

    return ""


def format_delta_for_append(previous: str, raw_delta: str) -> str:
    """Return the literal text to insert after ``previous``.

    Synthesizes ``". "`` when a capitalized delta follows a word with no
    terminal punctuation, a single space when two words would otherwise be
    glued together, and leaves the delta alone otherwise.
    """
    prev = str(previous or "")
    delta = str(raw_delta or "")
    if not delta.strip():
        return ""

    prev_trim_end = prev.rstrip()
    delta_trim_start = delta.lstrip()
    last_prev_char = prev_trim_end[-1:]
    first_delta_char = delta_trim_start[:1]

    prev_ends_word = bool(_WORD_END_RE.match(last_prev_char))
    prev_ends_clause = bool(_CLAUSE_END_RE.match(last_prev_char))
    delta_starts_word = bool(_WORD_START_RE.match(first_delta_char))
    delta_starts_upper = bool(_UPPER_RE.match(first_delta_char))
    prev_has_sentence_end = bool(_SENTENCE_END_RE.search(prev_trim_end))
    delta_has_leading_space = delta[:1].isspace()

    if prev_trim_end and prev_ends_word and delta_starts_upper and not prev_has_sentence_end:
        return f". {delta_trim_start}"

    if (
        prev_trim_end
        and (prev_ends_word or prev_ends_clause)
        and delta_starts_word
        and not delta_has_leading_space
    ):
        return f" {delta_trim_start}"

    return delta
