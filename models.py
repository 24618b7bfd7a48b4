"""Core data models for the dictation engine."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum


class SessionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    ERROR = "error"


class SpeechBackend(str, Enum):
    CLOUD = "cloud"
    NATIVE = "native"


class FlushReason(str, Enum):
    TIMER = "timer"
    SILENCE = "silence"
    FINAL = "final"
    STOP = "stop"
    ENDED = "ended"


class RecognitionKind(str, Enum):
    READY = "ready"
    TRANSCRIPT = "transcript"
    ERROR = "error"
    ENDED = "ended"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    is_final: bool = False
    message: str = ""


@dataclass
class InsertResult:
    consumed: bool
    reason: str = ""
    clipboard_restored: bool = True


@dataclass
class RefineResult:
    corrected_text: str
    source: str = "raw"


@dataclass
class PendingSuffix:
    text: str
    reason: FlushReason
    attempts: int = 0


@dataclass(frozen=True)
class SessionConfig:
    backend: SpeechBackend = SpeechBackend.NATIVE
    language: str = "en-US"
    has_api_key: bool = False
    push_to_talk: bool = False
    cloud_model: str = ""


@dataclass
class SessionContext:
    """Mutable state owned by exactly one dictation session.

    A fresh instance is created on every start; nothing here outlives the
    session that created it.

    Attributes:
        session_id: Monotonic id of the session inside its controller.
        config: Settings snapshot taken at start. The backend never changes
            for the lifetime of the session.
        state: Current state of the session.
        finalizing: Set once stop has begun; cleared when the session ends.
        anchor: Last raw native snapshot already turned into a delta.
        last_queued_suffix: Most recently enqueued suffix, for de-duplication.
        live_typed_text: Text confirmed delivered to the insertion sink.
        combined_transcript: Reconciled raw transcript, pasted on finalize
            when live typing never succeeded.
        current_partial: In-flight native partial not yet promoted.
        last_transcript_at: Monotonic time of the last native transcript.
        native_ended: The native backend reported that it exited.
        refine_seq: Counter taken at refinement start, compared on completion.
        last_refine_input: Input of the last debounced refinement.
        suffix_queue: Pending suffixes, owned by the dispatch queue.
    """

    session_id: int
    config: SessionConfig
    state: SessionState = SessionState.IDLE
    finalizing: bool = False
    anchor: str = ""
    last_queued_suffix: str = ""
    live_typed_text: str = ""
    combined_transcript: str = ""
    current_partial: str = ""
    last_transcript_at: float = 0.0
    native_ended: bool = False
    refine_seq: int = 0
    last_refine_input: str = ""
    suffix_queue: deque[PendingSuffix] = field(default_factory=deque)

    @property
    def backend(self) -> SpeechBackend:
        return self.config.backend

    @property
    def push_to_talk(self) -> bool:
        return self.config.push_to_talk

    @property
    def is_active(self) -> bool:
        """Listening and not yet finalizing."""
        return self.state == SessionState.LISTENING and not self.finalizing
