import logging
import time
from typing import Callable, Optional, Sequence

from PySide6.QtCore import Signal, Slot  # type: ignore

from keycoach.services.errors import PatternNotFound
from keycoach.services.models import LOWEST_A, Budget, NoteEvent, Pattern, Verdict, note_name
from keycoach.services.note_store import TimedNoteStore
from keycoach.services.pattern_library import sequence_pattern
from keycoach.services.settings_service import PracticeSettings
from keycoach.services.verification_engine import SequenceAttempt, VerificationEngine

logger = logging.getLogger(__name__)


class EchoAttempt(SequenceAttempt):
    """
    Exact echo of the reference. Two quick strikes on the lowest A are the
    player asking to hear the reference again, not part of the answer.
    """

    def __init__(self, pattern: Pattern, bucket_width: int, replay_window: int):
        super().__init__(pattern, bucket_width)
        self.replay_window = replay_window
        self._pending: Optional[NoteEvent] = None

    def feed(self, event: NoteEvent) -> Optional[Verdict]:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            if event.pitch == LOWEST_A and event.timestamp - pending.timestamp <= self.replay_window:
                self.replay_requested = True
                return None
            verdict = super().feed(pending)
            if verdict is not None:
                return verdict

        # A low A that completes the echo is an answer, not half a replay request
        if event.pitch == LOWEST_A and self.observed_count + 1 < len(self.pattern.offsets):
            self._pending = event
            return None
        return super().feed(event)

    def exhausted(self) -> Verdict:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            verdict = super().feed(pending)
            if verdict is not None:
                return verdict
        return super().exhausted()


class EarTrainingComparator(VerificationEngine):
    # Pitches for the prompt layer / device to play (again)
    referenceEmitted = Signal(list)
    replayRequested = Signal(list)

    def __init__(self, store: TimedNoteStore, settings: Optional[PracticeSettings] = None,
                 clock: Callable[[], int] = time.monotonic_ns):
        super().__init__(store, settings, clock)
        self._reference: list[int] = []
        self._reference_pattern: Optional[Pattern] = None
        self._send: Optional[Callable[[list], None]] = None

    @property
    def reference(self) -> list[int]:
        return list(self._reference)

    def emit_reference(self, pitches: Sequence[int], send: Optional[Callable[[list], None]] = None) -> Pattern:
        """Record the reference as it goes out to the device."""
        self._reference = list(pitches)
        self._reference_pattern = sequence_pattern(
            self._reference, name="echo " + " ".join(note_name(p) for p in self._reference),
            tolerance=self.settings.tolerance)
        if send is not None:
            self._send = send
        logger.info("EarTraining: reference %s", [note_name(p) for p in self._reference])
        if self._send is not None:
            self._send(list(self._reference))
        self.referenceEmitted.emit(list(self._reference))
        return self._reference_pattern

    @Slot()
    def replay(self):
        """Re-send the current reference through the same output."""
        if not self._reference:
            return
        logger.info("EarTraining: replaying reference")
        if self._send is not None:
            self._send(list(self._reference))
        self.referenceEmitted.emit(list(self._reference))

    def _make_attempt(self, pattern: Pattern) -> SequenceAttempt:
        if pattern.exact:
            return EchoAttempt(pattern, self.store.bucket_width, self.settings.replay_window_ns)
        return super()._make_attempt(pattern)

    def verify_echo(self, budget: Optional[Budget] = None, listen_start: Optional[int] = None) -> Optional[Verdict]:
        """
        Listen for the player's echo of the last reference. Returns None when
        the player asked for a replay instead of answering.
        """
        if self._reference_pattern is None:
            raise PatternNotFound("echo")
        verdict = self.verify(self._reference_pattern, budget, listen_start)
        if verdict is None:
            logger.info("EarTraining: replay requested")
            self.replayRequested.emit(list(self._reference))
        return verdict
