import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from PySide6.QtCore import QObject, Property, Signal, Slot  # type: ignore

from keycoach.services.errors import DeviceDisconnected
from keycoach.services.models import (
    Budget,
    Diagnosis,
    NoteEvent,
    NoteKind,
    NANOS_PER_SECOND,
    Pattern,
    PatternKind,
    Verdict,
    VerdictKind,
    note_name,
    seconds_to_ns,
)
from keycoach.services.note_store import TimedNoteStore
from keycoach.services.pattern_library import inversion_root_offset
from keycoach.services.settings_service import PracticeSettings

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    MATCHED = "matched"
    MISMATCH = "mismatch"
    TIMED_OUT = "timed_out"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"


class SequenceAttempt:
    """
    One listen over a scale or literal sequence. Pitches are compared to the
    pattern relative to the first observed note, or exactly for exact patterns.
    """

    def __init__(self, pattern: Pattern, bucket_width: int):
        self.pattern = pattern
        self.bucket_width = bucket_width
        self.observed: list[NoteEvent] = []
        self.divergences: list[Diagnosis] = []
        self.played_root: Optional[int] = pattern.root_pitch if pattern.exact else None
        self.replay_requested = False

    @property
    def observed_count(self) -> int:
        return len(self.observed)

    @property
    def last_note_time(self) -> Optional[int]:
        return self.observed[-1].timestamp if self.observed else None

    def _is_restrike(self, event: NoteEvent) -> bool:
        if not self.observed:
            return False
        previous = self.observed[-1]
        if previous.pitch != event.pitch or event.timestamp - previous.timestamp > self.bucket_width:
            return False
        idx = len(self.observed)
        offsets = self.pattern.offsets
        # A repeated note the pattern asks for is two notes, not a re-strike
        return not (idx < len(offsets) and offsets[idx] == offsets[idx - 1])

    def feed(self, event: NoteEvent) -> Optional[Verdict]:
        if self._is_restrike(event):
            logger.debug("VerificationEngine: coalesced re-strike of %s", event.name)
            return None

        offsets = self.pattern.offsets
        idx = len(self.observed)
        if idx >= len(offsets):
            return None
        if self.played_root is None:
            self.played_root = event.pitch - offsets[0]
        self.observed.append(event)

        expected = self.played_root + offsets[idx]
        if event.pitch != expected:
            self.divergences.append(Diagnosis.between(idx + 1, expected, event.pitch))

        if len(self.observed) == len(offsets):
            return self._verdict(VerdictKind.MISMATCH if self.divergences else VerdictKind.MATCHED)
        return None

    def exhausted(self) -> Verdict:
        if self.divergences:
            return self._verdict(VerdictKind.MISMATCH)
        if not self.observed:
            return self._verdict(VerdictKind.TIMED_OUT)
        return self._verdict(VerdictKind.INCOMPLETE)

    def cancelled(self) -> Verdict:
        return self._verdict(VerdictKind.CANCELLED)

    def _verdict(self, kind: VerdictKind) -> Verdict:
        return Verdict(
            kind=kind,
            pattern_name=self.pattern.name,
            observed=tuple(e.pitch for e in self.observed),
            expected_count=len(self.pattern.offsets),
            diagnosis=self.divergences[0] if self.divergences else None,
            divergences=tuple(self.divergences),
            played_root=self.played_root,
        )


class ChordAttempt(SequenceAttempt):
    """Notes struck within the chord window form a group; a full group is judged."""

    def __init__(self, pattern: Pattern, bucket_width: int, chord_window: int):
        super().__init__(pattern, bucket_width)
        self.chord_window = chord_window
        self.group: list[NoteEvent] = []

    def feed(self, event: NoteEvent) -> Optional[Verdict]:
        self.observed.append(event)
        if self.group and event.timestamp - self.group[0].timestamp > self.chord_window:
            logger.debug("VerificationEngine: chord group %s timed out", [e.name for e in self.group])
            self.group = []
        if any(e.pitch == event.pitch for e in self.group):
            return None
        self.group.append(event)

        size = len(self.pattern.offsets)
        if len(self.group) < size:
            return None

        pitches = sorted(e.pitch for e in self.group)
        lowest = pitches[0]
        shape = tuple(p - lowest for p in pitches)
        variants = self.pattern.variants or (self.pattern.offsets,)
        for inversion, variant in enumerate(variants):
            if shape == variant:
                self.played_root = lowest + inversion_root_offset(self.pattern.offsets, inversion)
                return self._group_verdict(VerdictKind.MATCHED, pitches)

        # Judge against the voicing with the fewest wrong notes
        best = min(variants, key=lambda v: sum(1 for a, b in zip(shape, v) if a != b))
        self.played_root = lowest
        self.divergences = [
            Diagnosis.between(i + 1, lowest + expected, observed)
            for i, (expected, observed) in enumerate(zip(best, pitches))
            if lowest + expected != observed
        ]
        return self._group_verdict(VerdictKind.MISMATCH, pitches)

    def _group_verdict(self, kind: VerdictKind, pitches: list[int]) -> Verdict:
        return Verdict(
            kind=kind,
            pattern_name=self.pattern.name,
            observed=tuple(pitches),
            expected_count=len(self.pattern.offsets),
            diagnosis=self.divergences[0] if self.divergences else None,
            divergences=tuple(self.divergences),
            played_root=self.played_root,
        )

    def exhausted(self) -> Verdict:
        if not self.observed:
            return self._verdict(VerdictKind.TIMED_OUT)
        return self._group_verdict(VerdictKind.INCOMPLETE, sorted(e.pitch for e in self.group))


class VerificationEngine(QObject):
    """
    Listens to the TimedNoteStore for one expected pattern at a time.

    verify() blocks the calling thread, start() runs the same attempt on a
    daemon thread and reports through verdictReady. Either can be cancelled
    from any thread with cancel().
    """
    verdictReady = Signal(object)
    stateChanged = Signal(str)

    def __init__(self, store: TimedNoteStore, settings: Optional[PracticeSettings] = None,
                 clock: Callable[[], int] = time.monotonic_ns):
        super().__init__()
        self.store = store
        self.settings = settings or store.settings
        self._clock = clock
        self._state = EngineState.IDLE
        self._cancel = threading.Event()
        self._busy = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_verdict: Optional[Verdict] = None

    @Property(str, notify=stateChanged)
    def state(self) -> str:
        return self._state.value

    @property
    def engine_state(self) -> EngineState:
        return self._state

    def _set_state(self, state: EngineState):
        if state is not self._state:
            self._state = state
            self.stateChanged.emit(state.value)

    def default_budget(self, pattern: Pattern) -> Budget:
        return Budget.for_pattern(pattern)

    def _make_attempt(self, pattern: Pattern) -> SequenceAttempt:
        if pattern.kind is PatternKind.CHORD:
            return ChordAttempt(pattern, self.store.bucket_width, self.settings.chord_window_ns)
        return SequenceAttempt(pattern, self.store.bucket_width)

    # ── Public API ────────────────────────────────────────────────────

    def verify(self, pattern: Pattern, budget: Optional[Budget] = None,
               listen_start: Optional[int] = None) -> Optional[Verdict]:
        if not self._busy.acquire(blocking=False):
            raise RuntimeError("a verification attempt is already listening")
        try:
            attempt = self._make_attempt(pattern)
            verdict = self._listen(attempt, budget or self.default_budget(pattern), listen_start)
        except DeviceDisconnected:
            self._set_state(EngineState.IDLE)
            raise
        finally:
            # A cancel stands until the attempt it lands on (or the next one) ends
            self._cancel.clear()
            self._busy.release()

        if verdict is not None:
            self._set_state(EngineState(verdict.kind.value))
            self.last_verdict = verdict
            logger.info("VerificationEngine: %s -> %s", pattern.name, verdict.kind.value)
            self.verdictReady.emit(verdict)
        else:
            self._set_state(EngineState.IDLE)
        return verdict

    def start(self, pattern: Pattern, budget: Optional[Budget] = None,
              listen_start: Optional[int] = None) -> threading.Thread:
        if listen_start is None:
            listen_start = self._clock()
        self._thread = threading.Thread(target=self.verify, args=(pattern, budget, listen_start), daemon=True)
        self._thread.start()
        return self._thread

    @Slot()
    def cancel(self):
        """
        Stop listening now, or stop the next attempt as soon as it starts if
        none is listening yet. The store is left exactly as it is.
        """
        self._cancel.set()
        self.store.wake()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ── Listening loop ────────────────────────────────────────────────

    def _deadline(self, attempt: SequenceAttempt, window_end: int, lateness: int) -> int:
        last = attempt.last_note_time
        if last is None:
            return window_end
        return min(window_end, last + lateness)

    def _listen(self, attempt: SequenceAttempt, budget: Budget, listen_start: Optional[int]) -> Optional[Verdict]:
        start = self._clock() if listen_start is None else listen_start
        window_end = start + seconds_to_ns(budget.max_listen_seconds)
        lateness = seconds_to_ns(attempt.pattern.tolerance.max_note_lateness_s)
        cursor = self.store.cursor_at(start)

        self._set_state(EngineState.LISTENING)
        logger.info("VerificationEngine: listening for %s (%d notes, %.1fs)",
                    attempt.pattern.name, budget.max_notes, budget.max_listen_seconds)

        while True:
            if self._cancel.is_set():
                return attempt.cancelled()

            deadline = self._deadline(attempt, window_end, lateness)
            ref, cursor = self.store.scan(cursor, NoteKind.DOWN)
            if ref is not None:
                if ref.event.timestamp > deadline:
                    return self._on_budget_spent(attempt)
                verdict = self._feed(attempt, ref.event)
                if verdict is not None or attempt.replay_requested:
                    return verdict
                if attempt.observed_count >= budget.max_notes:
                    return self._on_budget_spent(attempt)
                continue

            now = self._clock()
            if now >= deadline:
                return self._on_budget_spent(attempt)
            self.store.wait_for_append(cursor, (deadline - now) / NANOS_PER_SECOND, self._cancel.is_set)

    def _feed(self, attempt: SequenceAttempt, event: NoteEvent) -> Optional[Verdict]:
        logger.debug("VerificationEngine: heard %s", note_name(event.pitch))
        return attempt.feed(event)

    def _on_budget_spent(self, attempt: SequenceAttempt) -> Optional[Verdict]:
        return attempt.exhausted()
