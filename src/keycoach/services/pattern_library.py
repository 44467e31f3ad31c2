"""
Pattern library.

Stateless definitions of what the player is asked to play. Scales are built
from semitone step templates, chords from interval sets with every inversion
enumerated, literal sequences (ear-training echoes) are taken as-is.
"""
from typing import Optional, Sequence, Union

from keycoach.services.errors import PatternNotFound
from keycoach.services.models import (
    Direction,
    Pattern,
    PatternKind,
    ROOT_NOTES,
    Tolerance,
)

# Semitone steps between consecutive scale degrees, root to octave
SCALE_STEPS = {
    "major": (2, 2, 1, 2, 2, 2, 1),
    "harmonic minor": (2, 1, 2, 2, 1, 3, 1),
}

# Intervals from the root (0 = root, 4 = major 3rd, 7 = perfect 5th, ...)
CHORD_TYPES = {
    "major": (0, 4, 7),
    "minor": (0, 3, 7),
    "diminished": (0, 3, 6),
    "augmented": (0, 4, 8),
    "dominant 7th": (0, 4, 7, 10),
    "major 7th": (0, 4, 7, 11),
    "minor 7th": (0, 3, 7, 10),
    "minor major 7th": (0, 3, 7, 11),
}

_ALIASES = {
    "harmonic_minor": "harmonic minor",
    "minor harmonic": "harmonic minor",
    "maj": "major",
    "min": "minor",
    "dim": "diminished",
    "aug": "augmented",
    "7": "dominant 7th",
    "dominant seventh": "dominant 7th",
    "maj7": "major 7th",
    "min7": "minor 7th",
    "minmaj7": "minor major 7th",
}

_FLATS = {"Db": "C#", "D#": "Eb", "Gb": "F#", "G#": "Ab", "A#": "Bb"}


def parse_root(root: Union[int, str]) -> int:
    """MIDI number, or a note name such as 'C4', 'Bb3', 'F#5'."""
    if isinstance(root, int):
        pitch = root
    else:
        text = root.strip()
        letters = text.rstrip("-0123456789")
        octave_text = text[len(letters):]
        letters = letters[:1].upper() + letters[1:]
        letters = _FLATS.get(letters, letters)
        if letters not in ROOT_NOTES or not octave_text:
            raise PatternNotFound(f"root {root}")
        try:
            octave = int(octave_text)
        except ValueError as e:
            raise PatternNotFound(f"root {root}") from e
        pitch = (octave + 1) * 12 + ROOT_NOTES.index(letters)
    if not 0 <= pitch <= 127:
        raise PatternNotFound(f"root {root}")
    return pitch


def _normalize_name(name: str) -> tuple[str, Optional[PatternKind]]:
    key = " ".join(name.lower().replace("_", " ").replace("-", " ").split())
    kind = None
    for suffix, suffix_kind in ((" scale", PatternKind.SCALE), (" chord", PatternKind.CHORD),
                                (" triad", PatternKind.CHORD)):
        if key.endswith(suffix):
            key = key[: -len(suffix)]
            kind = suffix_kind
            break
    return _ALIASES.get(key, key), kind


def scale_offsets(steps: Sequence[int], direction: Direction) -> tuple[int, ...]:
    ascending = [0]
    for step in steps:
        ascending.append(ascending[-1] + step)
    if direction is Direction.ASCENDING:
        return tuple(ascending)
    descending = list(reversed(ascending))
    if direction is Direction.DESCENDING:
        return tuple(descending)
    return tuple(ascending + descending[1:])


def chord_inversions(intervals: Sequence[int]) -> tuple[tuple[int, ...], ...]:
    """Every rotation of a chord, each as offsets from its own lowest note."""
    base = sorted(intervals)
    variants = []
    for i in range(len(base)):
        rotated = base[i:] + [o + 12 for o in base[:i]]
        variants.append(tuple(o - rotated[0] for o in rotated))
    return tuple(variants)


def inversion_root_offset(intervals: Sequence[int], inversion: int) -> int:
    """Distance from the lowest note of an inversion up to the chord root."""
    base = sorted(intervals)
    return 0 if inversion == 0 else 12 - base[inversion]


def pattern_for(name: str, root_pitch: Union[int, str], direction: Direction = Direction.ASCENDING,
                tolerance: Optional[Tolerance] = None, inversions: bool = True) -> Pattern:
    """
    Look up a scale or chord by name, e.g. 'major', 'harmonic minor scale',
    'minor triad', 'dominant 7th chord'. Bare names resolve to scales first.
    """
    key, kind = _normalize_name(name)
    root = parse_root(root_pitch)
    tolerance = tolerance or Tolerance()

    if kind in (None, PatternKind.SCALE) and key in SCALE_STEPS:
        return Pattern(
            name=f"{ROOT_NOTES[root % 12]} {key} scale",
            root_pitch=root,
            offsets=scale_offsets(SCALE_STEPS[key], direction),
            kind=PatternKind.SCALE,
            direction=direction,
            tolerance=tolerance,
        )

    if kind in (None, PatternKind.CHORD) and key in CHORD_TYPES:
        intervals = CHORD_TYPES[key]
        variants = chord_inversions(intervals) if inversions else (tuple(intervals),)
        return Pattern(
            name=f"{ROOT_NOTES[root % 12]} {key} chord",
            root_pitch=root,
            offsets=tuple(intervals),
            kind=PatternKind.CHORD,
            tolerance=tolerance,
            variants=variants,
        )

    raise PatternNotFound(name)


def sequence_pattern(pitches: Sequence[int], name: str = "echo", tolerance: Optional[Tolerance] = None) -> Pattern:
    """A literal note sequence, matched exactly and never transposed."""
    if not pitches:
        raise PatternNotFound(name)
    root = pitches[0]
    return Pattern(
        name=name,
        root_pitch=root,
        offsets=tuple(p - root for p in pitches),
        kind=PatternKind.SEQUENCE,
        tolerance=tolerance or Tolerance(),
        exact=True,
    )


def available_patterns() -> list[str]:
    return [f"{k} scale" for k in SCALE_STEPS] + [f"{k} chord" for k in CHORD_TYPES]
