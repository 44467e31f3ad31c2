import sys
import unittest
from pathlib import Path

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root / "src"))

from keycoach.services.ear_training import EarTrainingComparator, EchoAttempt
from keycoach.services.errors import PatternNotFound
from keycoach.services.midi_normalizer import MidiNormalizer
from keycoach.services.models import LOWEST_A, NANOS_PER_MS, NANOS_PER_SECOND, NoteEvent, NoteKind, VerdictKind
from keycoach.services.note_store import TimedNoteStore
from keycoach.services.pattern_library import sequence_pattern
from keycoach.services.verification_engine import EngineState

LATE = 3600 * NANOS_PER_SECOND


class TestEarTrainingComparator(unittest.TestCase):
    def setUp(self):
        self.store = TimedNoteStore()
        self.normalizer = MidiNormalizer(self.store)
        self.comparator = EarTrainingComparator(self.store, clock=lambda: LATE)
        self.sent = []
        self.replays = []
        self.comparator.replayRequested.connect(lambda pitches: self.replays.append(pitches))

    def strike(self, pitch, at_ms):
        at = NANOS_PER_SECOND + int(at_ms * NANOS_PER_MS)
        self.normalizer.ingest(bytes([0x90, pitch, 90]), at)
        self.normalizer.ingest(bytes([0x80, pitch, 0]), at + NANOS_PER_MS // 2)

    def test_reference_goes_out(self):
        pattern = self.comparator.emit_reference([60, 64], send=lambda p: self.sent.append(p))
        self.assertEqual(self.sent, [[60, 64]])
        self.assertEqual(pattern.name, "echo C4 E4")
        self.assertTrue(pattern.exact)

        self.comparator.replay()
        self.assertEqual(self.sent, [[60, 64], [60, 64]])

    def test_exact_echo_matches(self):
        self.comparator.emit_reference([60, 64])
        self.strike(60, 0)
        self.strike(64, 400)
        verdict = self.comparator.verify_echo(listen_start=0)
        self.assertEqual(verdict.kind, VerdictKind.MATCHED)

    def test_transposed_echo_is_wrong(self):
        self.comparator.emit_reference([60, 64])
        self.strike(62, 0)
        self.strike(66, 400)
        verdict = self.comparator.verify_echo(listen_start=0)
        self.assertEqual(verdict.kind, VerdictKind.MISMATCH)
        self.assertEqual(verdict.diagnosis.position, 1)
        self.assertEqual(verdict.diagnosis.delta, 2)

    def test_double_low_a_requests_replay(self):
        self.comparator.emit_reference([60, 64], send=lambda p: self.sent.append(p))
        self.strike(LOWEST_A, 0)
        self.strike(LOWEST_A, 2)

        verdict = self.comparator.verify_echo(listen_start=0)
        self.assertIsNone(verdict)
        self.assertEqual(self.replays, [[60, 64]])
        self.assertIsNone(self.comparator.last_verdict)
        self.assertEqual(self.comparator.engine_state, EngineState.IDLE)

    def test_slow_low_a_is_an_answer(self):
        self.comparator.emit_reference([LOWEST_A, 24])
        self.strike(LOWEST_A, 0)
        self.strike(24, 300)
        verdict = self.comparator.verify_echo(listen_start=0)
        self.assertEqual(verdict.kind, VerdictKind.MATCHED)
        self.assertEqual(self.replays, [])

    def test_echo_ending_on_low_a_is_judged_at_once(self):
        pattern = sequence_pattern([60, LOWEST_A])
        attempt = EchoAttempt(pattern, self.store.bucket_width, self.store.bucket_width)
        base = NANOS_PER_SECOND
        self.assertIsNone(attempt.feed(NoteEvent(60, 90, NoteKind.DOWN, base)))

        verdict = attempt.feed(NoteEvent(LOWEST_A, 90, NoteKind.DOWN, base + 300 * NANOS_PER_MS))
        self.assertIsNotNone(verdict)
        self.assertEqual(verdict.kind, VerdictKind.MATCHED)
        self.assertFalse(attempt.replay_requested)

    def test_lone_low_a_counts_when_time_runs_out(self):
        self.comparator.emit_reference([LOWEST_A, 24])
        self.strike(LOWEST_A, 0)
        verdict = self.comparator.verify_echo(listen_start=0)
        self.assertEqual(verdict.kind, VerdictKind.INCOMPLETE)
        self.assertEqual(verdict.observed, (LOWEST_A,))

    def test_no_reference(self):
        with self.assertRaises(PatternNotFound):
            self.comparator.verify_echo()


if __name__ == "__main__":
    unittest.main()
