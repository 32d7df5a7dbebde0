"""Per-turn transcript accumulation and the caller-side transcript history.

Provides:
- TurnAccumulator: the user/AI open-turn buffers and their transitions
- AudioOnsetBoundary: policy that ends the user's turn when AI audio starts
- TranscriptTurn / TranscriptHistory: finalized turns, append-only

The accumulator never calls out; every transition returns what it emitted so
the session decides which callbacks fire.
"""

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock

from pipeline_frames import USER, ASSISTANT

# Boundary events the policy is asked about
AI_AUDIO_ONSET = "ai_audio_onset"


class TurnState(str, Enum):
    IDLE = "idle"
    USER_TURN_OPEN = "user_turn_open"
    AI_TURN_OPEN = "ai_turn_open"


class AudioOnsetBoundary:
    """The protocol has no end-of-user-turn marker; the AI starting to talk is one."""

    def closes_user_turn(self, event: str) -> bool:
        return event == AI_AUDIO_ONSET


def _append_chunk(buffer: str, chunk: str) -> str:
    if not buffer:
        return chunk
    if not chunk:
        return buffer
    if buffer[-1].isspace() or chunk[0].isspace():
        return buffer + chunk
    return buffer + " " + chunk


class TurnAccumulator:
    """Open user and AI buffers. Each closes at most once per turn."""

    def __init__(self, boundary=None):
        self.boundary = boundary or AudioOnsetBoundary()
        self._user = ""
        self._ai = ""

    @property
    def user_text(self) -> str:
        return self._user

    @property
    def ai_text(self) -> str:
        return self._ai

    @property
    def state(self) -> TurnState:
        if self._ai:
            return TurnState.AI_TURN_OPEN
        if self._user:
            return TurnState.USER_TURN_OPEN
        return TurnState.IDLE

    def add_user_text(self, text: str):
        self._user = _append_chunk(self._user, text)

    def add_ai_text(self, text: str):
        self._ai = _append_chunk(self._ai, text)

    def on_boundary(self, event: str) -> str | None:
        """Close the user buffer if the policy says `event` ends the turn.

        Returns the finalized user text, or None when nothing was closed.
        """
        if not self.boundary.closes_user_turn(event):
            return None
        text = self._user.strip()
        self._user = ""
        return text or None

    def ai_audio_started(self) -> str | None:
        """First audio of a new AI turn."""
        return self.on_boundary(AI_AUDIO_ONSET)

    def complete_ai_turn(self) -> str:
        """turn_complete: always closes the AI buffer, even if empty."""
        text = self._ai.strip()
        self._ai = ""
        return text

    def interrupt(self) -> str:
        """Discard the AI buffer without emitting it. Returns what was dropped."""
        dropped = self._ai
        self._ai = ""
        return dropped

    def reset(self):
        self._user = ""
        self._ai = ""


@dataclass(frozen=True)
class TranscriptTurn:
    """A finalized turn."""
    role: str  # USER or ASSISTANT
    text: str
    timestamp: float  # time.time() when finalized


class TranscriptHistory:
    """Append-only turn history, safe to fill from callbacks on any thread."""

    def __init__(self):
        self._turns: list[TranscriptTurn] = []
        self._lock = Lock()

    def append(self, role: str, text: str, timestamp: float | None = None) -> TranscriptTurn:
        if role not in (USER, ASSISTANT):
            raise ValueError(f"Unknown role: {role!r}")
        turn = TranscriptTurn(role=role, text=text,
                              timestamp=time.time() if timestamp is None else timestamp)
        with self._lock:
            self._turns.append(turn)
        return turn

    def turns(self) -> list[TranscriptTurn]:
        with self._lock:
            return list(self._turns)

    def format(self) -> str:
        """Human-readable dump: "[HH:MM:SS] ROLE: text" per turn."""
        lines = []
        for turn in self.turns():
            ts_str = time.strftime("%H:%M:%S", time.localtime(turn.timestamp))
            lines.append(f"[{ts_str}] {turn.role.upper()}: {turn.text}")
        return "\n\n".join(lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)
