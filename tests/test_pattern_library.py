import sys
import unittest
from pathlib import Path

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root / "src"))

from keycoach.services.errors import PatternNotFound
from keycoach.services.models import Budget, Direction, PatternKind
from keycoach.services.pattern_library import (
    available_patterns,
    chord_inversions,
    inversion_root_offset,
    parse_root,
    pattern_for,
    sequence_pattern,
)


class TestPatternLibrary(unittest.TestCase):
    def test_c_major_scale(self):
        pattern = pattern_for("major", 60)
        self.assertEqual(pattern.name, "C major scale")
        self.assertEqual(pattern.kind, PatternKind.SCALE)
        self.assertEqual(pattern.expected_pitches, [60, 62, 64, 65, 67, 69, 71, 72])
        self.assertEqual(len(pattern), 8)

    def test_directions(self):
        down = pattern_for("major scale", "C4", Direction.DESCENDING)
        self.assertEqual(down.expected_pitches, [72, 71, 69, 67, 65, 64, 62, 60])

        both = pattern_for("major", 60, Direction.BOTH)
        self.assertEqual(len(both), 15)
        self.assertEqual(both.expected_pitches[7], 72)
        self.assertEqual(both.expected_pitches[-1], 60)

    def test_harmonic_minor(self):
        pattern = pattern_for("harmonic_minor", "A3")
        self.assertEqual(pattern.root_pitch, 57)
        self.assertEqual(pattern.steps, [2, 1, 2, 2, 1, 3, 1])

    def test_chords_enumerate_inversions(self):
        pattern = pattern_for("major chord", 60)
        self.assertEqual(pattern.kind, PatternKind.CHORD)
        self.assertEqual(pattern.variants, ((0, 4, 7), (0, 3, 8), (0, 5, 9)))

        seventh = pattern_for("dominant 7th", "G3")
        self.assertEqual(len(seventh.variants), 4)
        self.assertEqual(Budget.for_pattern(seventh).max_notes, 12)

    def test_inversion_root_offset(self):
        intervals = (0, 4, 7)
        self.assertEqual(chord_inversions(intervals)[1], (0, 3, 8))
        self.assertEqual(inversion_root_offset(intervals, 0), 0)
        # E G C: root is 8 semitones above the E
        self.assertEqual(inversion_root_offset(intervals, 1), 8)
        # G C E: root is 5 semitones above the G
        self.assertEqual(inversion_root_offset(intervals, 2), 5)

    def test_parse_root(self):
        self.assertEqual(parse_root("C4"), 60)
        self.assertEqual(parse_root("Bb3"), 58)
        self.assertEqual(parse_root("a#3"), 58)
        self.assertEqual(parse_root("F#5"), 78)
        self.assertEqual(parse_root(21), 21)
        for bad in ("H4", "C", 200, "C#x"):
            with self.assertRaises(PatternNotFound):
                parse_root(bad)

    def test_unknown_pattern(self):
        with self.assertRaises(PatternNotFound):
            pattern_for("lydian", 60)
        with self.assertRaises(LookupError):
            pattern_for("major 9th chord", 60)

    def test_sequence_pattern_is_exact(self):
        pattern = sequence_pattern([60, 64, 67])
        self.assertTrue(pattern.exact)
        self.assertEqual(pattern.kind, PatternKind.SEQUENCE)
        self.assertEqual(pattern.expected_pitches, [60, 64, 67])
        with self.assertRaises(PatternNotFound):
            sequence_pattern([])

    def test_available_patterns(self):
        names = available_patterns()
        self.assertIn("major scale", names)
        self.assertIn("minor major 7th chord", names)


if __name__ == "__main__":
    unittest.main()
