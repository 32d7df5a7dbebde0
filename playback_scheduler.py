"""Gapless playback scheduling for streamed AI audio.

Every decoded chunk starts exactly where the previous one ends, or at the
output's current time if the tail already played out:

    start_at = max(cursor, now)
    cursor   = start_at + duration

The scheduler is the only writer of the cursor and of the active set, and it
must only be driven from the session actor.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from audio_codec import AudioBuffer

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ScheduledPlayback:
    buffer: AudioBuffer
    start_at: float
    duration: float
    source: Any = field(default=None, repr=False)

    @property
    def end_at(self) -> float:
        return self.start_at + self.duration


class PlaybackScheduler:
    """Owns the playback cursor and the set of in-flight buffers.

    `output` needs `current_time` (seconds) and
    `play(buffer, start_at, on_ended) -> handle with stop()`.
    """

    def __init__(self, output, on_speaking_change: Callable[[bool], None] | None = None):
        self.output = output
        self.on_speaking_change = on_speaking_change or (lambda speaking: None)
        self.cursor = 0.0
        self._active: list[ScheduledPlayback] = []

    @property
    def active(self) -> tuple:
        return tuple(self._active)

    @property
    def is_idle(self) -> bool:
        return not self._active

    @property
    def speaking(self) -> bool:
        return bool(self._active)

    def schedule(self, buffer: AudioBuffer,
                 on_ended: Callable[[ScheduledPlayback], None] | None = None) -> ScheduledPlayback:
        """Queue `buffer` right after the current tail.

        `on_ended(playback)` is invoked by the output when the buffer plays
        out naturally; the caller routes it back into finish().
        """
        now = self.output.current_time
        start_at = max(self.cursor, now)
        playback = ScheduledPlayback(buffer=buffer, start_at=start_at, duration=buffer.duration)

        ended = (lambda _source: on_ended(playback)) if on_ended else None
        playback.source = self.output.play(buffer, start_at, ended)
        self.cursor = start_at + playback.duration

        was_idle = not self._active
        self._active.append(playback)
        logger.debug("Scheduled %.3fs at %.3f (now %.3f, cursor %.3f)",
                     playback.duration, start_at, now, self.cursor)
        if was_idle:
            self.on_speaking_change(True)
        return playback

    def finish(self, playback: ScheduledPlayback) -> bool:
        """Natural completion. Unknown (already stopped) playbacks are ignored."""
        try:
            self._active.remove(playback)
        except ValueError:
            return False
        if not self._active:
            self.on_speaking_change(False)
        return True

    def _stop_all(self) -> int:
        stopped = 0
        for playback in self._active:
            if playback.source is not None:
                playback.source.stop()
            stopped += 1
        self._active.clear()
        return stopped

    def interrupt(self) -> int:
        """Stop everything now and pull the cursor back to the present."""
        stopped = self._stop_all()
        self.cursor = self.output.current_time
        if stopped:
            logger.info("Playback interrupted (%d buffers stopped)", stopped)
            self.on_speaking_change(False)
        return stopped

    def reset(self):
        """Stop everything without reporting a speaking change (session teardown)."""
        self._stop_all()
        self.cursor = 0.0
