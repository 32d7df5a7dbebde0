"""Typed dataclass frames that flow into the session actor via asyncio.Queue."""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class FrameType(Enum):
    OPENED = auto()            # Channel handshake finished
    CLOSED = auto()            # Remote closed the channel
    ERROR = auto()             # Channel/protocol failure (data: ChannelError)
    AUDIO_CHUNK = auto()       # Inbound AI audio (data: base64 PCM)
    TRANSCRIPT_CHUNK = auto()  # Partial transcript (data: text, metadata["role"])
    TURN_COMPLETE = auto()     # AI finished its turn
    INTERRUPTED = auto()       # AI turn was cut off
    PLAYBACK_ENDED = auto()    # A scheduled buffer finished (data: ScheduledPlayback)


USER = "user"
ASSISTANT = "assistant"


@dataclass
class PipelineFrame:
    type: FrameType
    data: Any = None
    metadata: dict = field(default_factory=dict)

    @property
    def role(self) -> str | None:
        return self.metadata.get("role")
