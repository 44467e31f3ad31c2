from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

NANOS_PER_SECOND = 1_000_000_000
NANOS_PER_MS = 1_000_000

# Same spelling the chord trainer shows on screen
ROOT_NOTES = ["C", "C#", "D", "Eb", "E", "F", "F#", "G", "Ab", "A", "Bb", "B"]

# Real pianos start with a low A (A0), the MIDI standard starts at C
LOWEST_A = 21


def note_name(pitch: int) -> str:
    """Readable name for a MIDI pitch, middle C (60) is C4."""
    return f"{ROOT_NOTES[pitch % 12]}{pitch // 12 - 1}"


def seconds_to_ns(seconds: float) -> int:
    return int(round(seconds * NANOS_PER_SECOND))


class NoteKind(Enum):
    DOWN = "down"
    UP = "up"


@dataclass(frozen=True)
class NoteEvent:
    pitch: int
    velocity: int
    kind: NoteKind
    timestamp: int  # monotonic ns
    source_channel: int = 0

    @property
    def name(self) -> str:
        return note_name(self.pitch)

    @property
    def is_down(self) -> bool:
        return self.kind is NoteKind.DOWN

    def to_string(self) -> str:
        label = "KeyDown" if self.is_down else "KeyUp"
        return f"{label}{self.name}"


@dataclass(frozen=True)
class PedalChange:
    down: bool
    timestamp: int
    source_channel: int = 0


@dataclass
class HeldInterval:
    """Span during which a pitch counts as pressed, sustain pedal included."""
    pitch: int
    start: int
    end: Optional[int] = None
    released: bool = False
    velocity: int = 0

    @property
    def closed(self) -> bool:
        return self.end is not None

    def close(self, at: int):
        self.end = max(at, self.start)
        self.released = True

    def covers(self, t: int, tolerance: int = 0) -> bool:
        if t < self.start - tolerance:
            return False
        return self.end is None or t <= self.end + tolerance


@dataclass
class PedalState:
    down: bool = False


@dataclass(frozen=True)
class StoredEvent:
    """A reference to a NoteEvent held in a TimeBucket."""
    event: NoteEvent
    seq: int
    authoritative: bool = True

    def shadow(self) -> "StoredEvent":
        return StoredEvent(self.event, self.seq, authoritative=False)


@dataclass
class TimeBucket:
    index: int
    entries: list = field(default_factory=list)


class Direction(Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"
    BOTH = "both"


class PatternKind(Enum):
    SCALE = "scale"
    CHORD = "chord"
    SEQUENCE = "sequence"


@dataclass(frozen=True)
class Tolerance:
    max_note_lateness_s: float = 2.0
    max_total_s: float = 30.0


@dataclass(frozen=True)
class Pattern:
    name: str
    root_pitch: int
    offsets: Tuple[int, ...]
    kind: PatternKind = PatternKind.SCALE
    direction: Direction = Direction.ASCENDING
    tolerance: Tolerance = Tolerance()
    # Chord voicings as offsets from the lowest note, root position first
    variants: Tuple[Tuple[int, ...], ...] = ()
    # Exact patterns are matched pitch for pitch, never transposed
    exact: bool = False

    @property
    def expected_pitches(self) -> list[int]:
        return [self.root_pitch + o for o in self.offsets]

    @property
    def steps(self) -> list[int]:
        return [b - a for a, b in zip(self.offsets, self.offsets[1:])]

    def __len__(self) -> int:
        return len(self.offsets)


@dataclass(frozen=True)
class Budget:
    max_notes: int
    max_listen_seconds: float

    @classmethod
    def for_pattern(cls, pattern: Pattern) -> "Budget":
        if pattern.kind is PatternKind.CHORD:
            # room for a few wrong grabs before giving up
            max_notes = len(pattern.offsets) * 3
        else:
            max_notes = len(pattern.offsets)
        return cls(max_notes=max_notes, max_listen_seconds=pattern.tolerance.max_total_s)


class VerdictKind(Enum):
    MATCHED = "matched"
    MISMATCH = "mismatch"
    TIMED_OUT = "timed_out"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"


class ErrorClass(Enum):
    LIKELY_ACCIDENTAL = "likely accidental"
    WRONG_OCTAVE = "wrong octave"
    WRONG_NOTE = "wrong note"


def classify_delta(delta: int) -> ErrorClass:
    if abs(delta) == 1:
        return ErrorClass.LIKELY_ACCIDENTAL
    if delta % 12 == 0:
        return ErrorClass.WRONG_OCTAVE
    return ErrorClass.WRONG_NOTE


@dataclass(frozen=True)
class Diagnosis:
    position: int  # 1-based
    expected: int
    observed: int
    delta: int
    classification: ErrorClass

    @classmethod
    def between(cls, position: int, expected: int, observed: int) -> "Diagnosis":
        delta = observed - expected
        return cls(position, expected, observed, delta, classify_delta(delta))

    @property
    def expected_name(self) -> str:
        return note_name(self.expected)

    @property
    def observed_name(self) -> str:
        return note_name(self.observed)


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    pattern_name: str
    observed: Tuple[int, ...] = ()
    expected_count: int = 0
    diagnosis: Optional[Diagnosis] = None
    divergences: Tuple[Diagnosis, ...] = ()
    played_root: Optional[int] = None

    @property
    def matched(self) -> bool:
        return self.kind is VerdictKind.MATCHED

    def to_dict(self) -> dict:
        data = {
            "kind": self.kind.value,
            "pattern": self.pattern_name,
            "observed": [note_name(p) for p in self.observed],
            "expected_count": self.expected_count,
        }
        if self.played_root is not None:
            data["played_root"] = note_name(self.played_root)
        if self.diagnosis is not None:
            d = self.diagnosis
            data["diagnosis"] = {
                "position": d.position,
                "expected": d.expected_name,
                "observed": d.observed_name,
                "delta": d.delta,
                "classification": d.classification.value,
            }
        return data
