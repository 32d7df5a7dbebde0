#!/usr/bin/env python3
"""
Console front end for a live voice session.

Prints the AI's speech as it is transcribed, records finished turns, and
dumps the conversation when the session ends (Ctrl-C or remote close).
"""

import argparse
import asyncio
import base64
import logging
import signal
import sys
from pathlib import Path

from pipeline_frames import ASSISTANT, USER
from session_client import DEFAULT_INSTRUCTION, DEFAULT_VOICE, SessionConfig
from transcript_buffer import TranscriptHistory
from voice_session import SessionCallbacks, SessionStatus, VoiceSession

log = logging.getLogger("live_voice")


class ConsoleView:
    """Stands in for the UI: captions on stdout, finished turns in a history."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.history = TranscriptHistory()
        self.caption = ""
        self.ended = asyncio.Event()

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_ai_chunk=self.on_ai_chunk,
            on_user_turn_complete=self.on_user_turn_complete,
            on_ai_turn_complete=self.on_ai_turn_complete,
            on_interrupted=self.on_interrupted,
            on_status=self.on_status,
        )

    def _write(self, text):
        self.out.write(text)
        self.out.flush()

    def on_ai_chunk(self, text):
        if not self.caption:
            self._write("AI: ")
        self.caption += text
        self._write(text)

    def on_user_turn_complete(self, text):
        self.history.append(USER, text)
        self._write(f"\nYou: {text}\n")

    def on_ai_turn_complete(self, text):
        if text:
            self.history.append(ASSISTANT, text)
        if self.caption:
            self._write("\n")
        self.caption = ""

    def on_interrupted(self):
        if self.caption:
            self._write(" [interrupted]\n")
        self.caption = ""

    def on_status(self, status):
        if status == SessionStatus.CONNECTED.value:
            self._write("[Listening... press Ctrl-C to end]\n")
        elif status == SessionStatus.IDLE.value:
            self.ended.set()


def build_config(args) -> SessionConfig:
    instruction = args.instruction
    if args.instruction_file:
        instruction = Path(args.instruction_file).expanduser().read_text().strip()

    visual_context = None
    if args.image:
        visual_context = base64.b64encode(Path(args.image).expanduser().read_bytes()).decode("ascii")

    return SessionConfig(
        instruction_text=instruction,
        voice_id=args.voice,
        visual_context=visual_context,
    )


async def run(args) -> int:
    view = ConsoleView()
    session = VoiceSession()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, view.ended.set)
    except NotImplementedError:
        pass

    async with session:
        if not await session.connect(build_config(args), view.callbacks()):
            log.error("Could not start session: %s", session.error.message if session.error else "unknown")
            return 1
        await view.ended.wait()

    if len(view.history):
        print("\n" + "=" * 60)
        print(view.history.format())
        print("=" * 60)

    if session.error:
        print(f"Session ended with error: {session.error.message}", file=sys.stderr)
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(description="Talk to Gemini Live from the terminal")
    parser.add_argument("--voice", default=DEFAULT_VOICE, help=f"Prebuilt voice name (default: {DEFAULT_VOICE})")
    parser.add_argument("--instruction", default=DEFAULT_INSTRUCTION, help="System instruction text")
    parser.add_argument("--instruction-file", default=None, help="Read the system instruction from a file")
    parser.add_argument("--image", default=None, help="JPEG to send as visual context")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
