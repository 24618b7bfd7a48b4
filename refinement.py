"""Transcript refinement: the cleanup service and the debounced live pipeline.

``DashscopeRefiner`` turns a noisy transcript into one clean sentence,
first through a DashScope chat model (when enabled), then through a
self-correction heuristic.  ``LiveRefinePipeline`` debounces changes of
the combined transcript and re-applies refined text through the live
typing chain, discarding results that a newer refinement superseded.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Optional

from debug_log import DebugLog
from interfaces import Refiner
from live_typing import LiveTyper
from models import RefineResult, SessionContext
from scheduling import SessionTimers
from transcript_text import normalize_transcript

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

REFINE_TIMER = "live-refine"

SYSTEM_PROMPT = " ".join(
    [
        "You are a transcript post-processor for dictated user text.",
        "Your job is to rewrite noisy speech-to-text into one clean final sentence while preserving the user intent.",
        "Rules:",
        "1) Preserve original meaning and tense; do not add new facts.",
        '2) Apply explicit self-corrections in the utterance. Example: "3am no 5am" => "5am".',
        "3) Remove filler/disfluencies: uh, um, uhh, er, like (when filler), you know, i mean (if filler), repeated stutters.",
        "4) Resolve immediate restarts/repetitions and keep the latest valid phrase.",
        "5) Keep wording natural and concise; fix basic grammar/punctuation only when needed for readability.",
        "6) Keep first-person voice if present.",
        "7) Output exactly one cleaned sentence only.",
        "8) Output plain text only. No quotes, no markdown, no labels, no explanations.",
    ]
)

_CORRECTION_RE = re.compile(
    r"\b(?:no|i mean|actually|sorry|correction|rather|make that)\b\s+(.+)$", re.IGNORECASE
)
_PREPOSITION_TAIL_RE = re.compile(
    r"\b(for|at|on|in|to|from|with)\s+([^\s]+(?:\s+[^\s]+)?)$", re.IGNORECASE
)
_TRAILING_JOINERS_RE = re.compile(r"[,:;\-]+$")
_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE_RE = re.compile(r"```$")
_LABEL_RE = re.compile(
    r"^(?:final(?:\s+answer)?|output|corrected(?:\s+sentence)?|rewritten)\s*:\s*", re.IGNORECASE
)
_BULLET_RE = re.compile(r"^[-*]\s+")
_QUOTES_RE = re.compile("^[\"'`]+|[\"'`]+$")


def extract_refined_transcript_only(raw: str) -> str:
    """Strip the wrapping a chat model tends to add around its answer."""
    cleaned = str(raw or "").strip()
    if not cleaned:
        return ""
    cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", cleaned)).strip()
    cleaned = _LABEL_RE.sub("", cleaned).strip()
    cleaned = _BULLET_RE.sub("", cleaned).strip()
    first_line = next((line.strip() for line in cleaned.split("\n") if line.strip()), "")
    cleaned = first_line or cleaned
    cleaned = _QUOTES_RE.sub("", cleaned).strip()
    return normalize_transcript(cleaned)


def apply_heuristic_correction(text: str) -> str:
    """Apply a spoken self-correction such as "at 3am no 5am" -> "at 5am"."""
    normalized = normalize_transcript(text)
    if not normalized:
        return ""

    match = _CORRECTION_RE.search(normalized)
    if not match:
        return normalized
    correction = normalize_transcript(match.group(1))
    if not correction:
        return normalized

    before = normalize_transcript(_TRAILING_JOINERS_RE.sub("", normalized[: match.start()]))
    if not before:
        return correction

    prep_match = _PREPOSITION_TAIL_RE.search(before)
    if prep_match:
        preposition = prep_match.group(1)
        stem = normalize_transcript(before[: prep_match.start()])
        has_prep = re.match(rf"{re.escape(preposition)}\b", correction, re.IGNORECASE)
        tail = correction if has_prep else f"{preposition} {correction}"
        return normalize_transcript(f"{stem} {tail}")

    before_words = before.split(" ")
    drop_count = min(4, max(1, len(correction.split(" "))))
    prefix = " ".join(before_words[: max(0, len(before_words) - drop_count)])
    return normalize_transcript(f"{prefix} {correction}") or normalized


class DashscopeRefiner:
    """Best-effort transcript cleanup; never raises."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "qwen-turbo",
        enabled: bool = False,
        request_timeout_s: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._enabled = enabled
        self._request_timeout_s = request_timeout_s

    async def refine(self, text: str) -> RefineResult:
        normalized = normalize_transcript(text)
        if not normalized:
            return RefineResult(corrected_text="", source="raw")

        if self._enabled and self._api_key and dashscope is not None:
            try:
                reply = await asyncio.to_thread(self._call_model, normalized)
                cleaned = extract_refined_transcript_only(reply)
                if cleaned:
                    return RefineResult(corrected_text=cleaned, source="ai")
            except Exception as exc:
                logger.warning("AI transcript correction failed: %s", exc)
                message = str(exc).lower()
                if "econnrefused" in message or "connection refused" in message:
                    return RefineResult(corrected_text=normalized, source="raw")

        corrected = apply_heuristic_correction(normalized)
        if corrected:
            return RefineResult(corrected_text=corrected, source="heuristic")
        return RefineResult(corrected_text=normalized, source="raw")

    def _call_model(self, transcript: str) -> str:
        prompt = "\n".join(["Raw transcript:", transcript, "", "Return exactly one cleaned sentence."])
        response = dashscope.Generation.call(
            api_key=self._api_key,
            model=self._model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            result_format="message",
            temperature=0,
            timeout=self._request_timeout_s,
        )
        return self._extract_content(response)

    def _extract_content(self, response: Any) -> str:
        if not isinstance(response, dict):
            return ""
        status = response.get("status_code", 200)
        if status not in (None, 200):
            raise RuntimeError(f"{response.get('code', status)}: {response.get('message', '')}")
        output = response.get("output") or {}
        choices = output.get("choices") or []
        if not choices:
            return str(output.get("text") or "")
        message = choices[0].get("message") or {}
        return str(message.get("content") or "")


class LiveRefinePipeline:
    def __init__(
        self,
        ctx: SessionContext,
        refiner: Refiner,
        typer: LiveTyper,
        timers: SessionTimers,
        debug: DebugLog,
        debounce_s: float = 1.0,
        on_refined: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._ctx = ctx
        self._refiner = refiner
        self._typer = typer
        self._timers = timers
        self._debug = debug
        self._debounce_s = debounce_s
        self._on_refined = on_refined

    def schedule(self) -> None:
        """(Re)arm the debounce after the combined transcript changed."""
        if self._ctx.push_to_talk or self._ctx.finalizing:
            return
        self._timers.call_later(REFINE_TIMER, self._debounce_s, self._on_debounce)

    def cancel(self) -> None:
        self._timers.cancel(REFINE_TIMER)

    async def _on_debounce(self) -> None:
        current = normalize_transcript(self._ctx.combined_transcript)
        if not current:
            return
        if current == self._ctx.last_refine_input:
            return
        self._ctx.last_refine_input = current
        await self.refine_and_apply(current, force=False)

    async def refine_and_apply(self, raw_transcript: str, force: bool = False) -> str:
        """Refine ``raw_transcript`` and type it unless a newer call superseded it.

        The refined text is always returned; ``force`` skips the staleness
        checks and is used by the finalizer.
        """
        base = normalize_transcript(raw_transcript)
        if not base:
            return ""

        self._ctx.refine_seq += 1
        request_seq = self._ctx.refine_seq
        refined_text = base
        try:
            refined = await self._refiner.refine(base)
            cleaned = normalize_transcript(refined.corrected_text)
            if cleaned:
                refined_text = cleaned
        except Exception as exc:
            logger.warning("Live transcript post-processing failed: %s", exc)

        if not force:
            if self._ctx.finalizing:
                self._debug.log("result", "refinement finished after stop", seq=request_seq)
                return refined_text
            if request_seq != self._ctx.refine_seq:
                self._debug.log("result", "stale refinement discarded", seq=request_seq)
                return refined_text
            if base != normalize_transcript(self._ctx.combined_transcript):
                self._debug.log("result", "refinement input changed", seq=request_seq)
                return refined_text

        if self._on_refined:
            self._on_refined(refined_text)
        self._typer.apply(refined_text)
        return refined_text
