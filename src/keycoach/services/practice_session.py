import logging
import threading
import time
from typing import Callable, Optional, Sequence, Union

from PySide6.QtCore import QObject, Qt, Signal, Slot  # type: ignore

from keycoach.services.ear_training import EarTrainingComparator
from keycoach.services.errors import DeviceDisconnected
from keycoach.services.midi_normalizer import MidiNormalizer, RawMessage
from keycoach.services.models import (
    Budget,
    Direction,
    NoteEvent,
    PedalChange,
    PedalState,
    Pattern,
    Verdict,
    seconds_to_ns,
)
from keycoach.services.note_store import TimedNoteStore
from keycoach.services.pattern_library import pattern_for
from keycoach.services.prompts import render_prompt, render_verdict
from keycoach.services.settings_service import PracticeSettings
from keycoach.services.verification_engine import VerificationEngine

logger = logging.getLogger(__name__)


class PracticeSession(QObject):
    """
    Everything one practice session owns: pedal state, the note store, its
    single writer and the two listeners. The device thread calls
    on_midi_data(); prompts go out through speakInstruction.
    """
    midiNoteReceived = Signal(int, bool)
    verdictReady = Signal(object)
    speakInstruction = Signal(str)
    sessionClosed = Signal(str)

    def __init__(self, settings: Optional[PracticeSettings] = None, clock: Callable[[], int] = time.monotonic_ns):
        super().__init__()
        self.settings = settings or PracticeSettings()
        self._clock = clock
        self.pedal = PedalState()
        self.store = TimedNoteStore(self.settings)
        self.normalizer = MidiNormalizer(self.store, self.pedal, self.settings.sustain_threshold)
        self.engine = VerificationEngine(self.store, self.settings, clock)
        self.ear_training = EarTrainingComparator(self.store, self.settings, clock)
        self._closed_reason: Optional[str] = None
        self._quit = False

        # Verdicts may arrive on a listener thread; handle them there
        self.engine.verdictReady.connect(self._on_verdict, Qt.DirectConnection)
        self.ear_training.verdictReady.connect(self._on_verdict, Qt.DirectConnection)

    # ── Producer path ─────────────────────────────────────────────────

    def on_midi_data(self, message: RawMessage, arrival_ns: Optional[int] = None) -> Optional[Union[NoteEvent, PedalChange]]:
        """Called from the device thread for every raw message."""
        if self._closed_reason is not None or self._quit:
            return None
        result = self.normalizer.ingest(message, self._clock() if arrival_ns is None else arrival_ns)
        if isinstance(result, NoteEvent):
            self.midiNoteReceived.emit(result.pitch, result.is_down)
        return result

    @Slot(str)
    def stream_closed(self, reason: str = "device disconnected"):
        if self._closed_reason is not None:
            return
        self._closed_reason = reason
        self.normalizer.close_stream(reason)
        self.sessionClosed.emit(reason)

    # ── Verification ──────────────────────────────────────────────────

    def _ensure_open(self):
        if self._closed_reason is not None:
            raise DeviceDisconnected(self._closed_reason)
        if self._quit:
            raise RuntimeError("practice session has quit")

    def _prepare(self, pattern: Pattern, budget: Optional[Budget]) -> Budget:
        self._ensure_open()
        budget = budget or Budget(
            max_notes=Budget.for_pattern(pattern).max_notes,
            max_listen_seconds=self.settings.listen_seconds,
        )
        self.store.require_retention(seconds_to_ns(budget.max_listen_seconds))
        self.speakInstruction.emit(render_prompt(pattern))
        return budget

    def verify_pattern(self, name: str, root: Union[int, str], direction: Direction = Direction.ASCENDING,
                       budget: Optional[Budget] = None, listen_start: Optional[int] = None) -> Optional[Verdict]:
        """Prompt for a scale or chord and block until it is judged."""
        pattern = pattern_for(name, root, direction, self.settings.tolerance)
        budget = self._prepare(pattern, budget)
        return self.engine.verify(pattern, budget, listen_start)

    def start_pattern(self, name: str, root: Union[int, str], direction: Direction = Direction.ASCENDING,
                      budget: Optional[Budget] = None) -> threading.Thread:
        pattern = pattern_for(name, root, direction, self.settings.tolerance)
        budget = self._prepare(pattern, budget)
        return self.engine.start(pattern, budget)

    def play_echo(self, pitches: Sequence[int], send: Optional[Callable[[list], None]] = None) -> Pattern:
        self._ensure_open()
        pattern = self.ear_training.emit_reference(pitches, send)
        self.speakInstruction.emit(render_prompt(pattern))
        return pattern

    def verify_echo(self, budget: Optional[Budget] = None, listen_start: Optional[int] = None) -> Optional[Verdict]:
        self._ensure_open()
        if budget is not None:
            self.store.require_retention(seconds_to_ns(budget.max_listen_seconds))
        return self.ear_training.verify_echo(budget, listen_start)

    def _on_verdict(self, verdict: Verdict):
        self.verdictReady.emit(verdict)
        text = render_verdict(verdict)
        if text:
            self.speakInstruction.emit(text)

    # ── Console operations ────────────────────────────────────────────

    def dump_buffer(self, seconds: Optional[float] = None) -> list[dict]:
        return [
            {
                "pitch": e.pitch,
                "name": e.name,
                "kind": e.kind.value,
                "velocity": e.velocity,
                "timestamp": e.timestamp,
                "channel": e.source_channel,
            }
            for e in self.store.recent_events(seconds)
        ]

    def format_buffer(self, seconds: Optional[float] = None) -> str:
        keys = " ".join(e.to_string() for e in self.store.recent_events(seconds))
        return f"KeyBuffer [ most_recent_insert = {self.store.latest_timestamp} ] [ keys = {keys} ]"

    def held_now(self) -> list[int]:
        """Pitches sounding right now, pedal-sustained ones included."""
        return sorted(iv.pitch for iv in self.store.open_intervals())

    @Slot()
    def clear_buffer(self):
        self.store.clear()

    @Slot()
    def quit(self):
        """Stop any listener immediately. Recorded notes are left as they are."""
        self._quit = True
        self.engine.cancel()
        self.ear_training.cancel()
        logger.info("PracticeSession: quit")
