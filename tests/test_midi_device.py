import sys
import unittest
from pathlib import Path

import mido  # type: ignore

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root / "src"))

from keycoach.services.errors import DeviceDisconnected
from keycoach.services.midi_device import MidiDevice, choose_input, pair_output
from keycoach.services.practice_session import PracticeSession


class RecordingPort:
    """Stands in for a mido output port."""

    def __init__(self):
        self.sent = []
        self.closed = False

    def send(self, msg):
        self.sent.append(msg)

    def close(self):
        self.closed = True


class TestPortSelection(unittest.TestCase):
    def test_choose_input(self):
        self.assertEqual(choose_input(["Digital Piano"]), "Digital Piano")
        with self.assertLogs("keycoach.services.midi_device", level="WARNING"):
            self.assertEqual(choose_input(["Roland FP-30", "Launchkey"]), "Roland FP-30")
        with self.assertRaises(DeviceDisconnected):
            choose_input([])

    def test_pair_output(self):
        outputs = ["Microsoft GS Wavetable Synth", "Roland FP-30 MIDI Out", "Roland Synth"]
        self.assertEqual(pair_output("Roland FP-30 MIDI In", outputs), "Roland FP-30 MIDI Out")
        self.assertEqual(pair_output("Casio", ["USB MIDI 1"]), "USB MIDI 1")
        self.assertIsNone(pair_output("Casio", ["Yamaha Out", "Korg Out"]))


class TestMidiDevice(unittest.TestCase):
    def setUp(self):
        self.session = PracticeSession()
        self.port = RecordingPort()
        self.device = MidiDevice(self.session, output_port=self.port, clock=lambda: 42)

    def test_incoming_messages_reach_the_session(self):
        self.device._on_message(mido.Message("note_on", note=60, velocity=90))
        events = self.session.store.recent_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].pitch, 60)
        self.assertEqual(events[0].timestamp, 42)

    def test_play_sequence(self):
        self.device.play_sequence([60, 64], gap_s=0, velocity=70, blocking=True)
        self.assertEqual(
            [(m.type, m.note) for m in self.port.sent],
            [("note_on", 60), ("note_off", 60), ("note_on", 64), ("note_off", 64)],
        )
        self.assertEqual(self.port.sent[0].velocity, 70)

    def test_close_reports_disconnect(self):
        closed = []
        self.session.sessionClosed.connect(lambda reason: closed.append(reason))
        self.device.close("unplugged")

        self.assertTrue(self.port.closed)
        self.assertEqual(closed, ["unplugged"])
        self.assertTrue(self.session.store.closed)
        # Late callbacks from the backend thread are ignored
        self.device._on_message(mido.Message("note_on", note=60, velocity=90))
        self.assertEqual(len(self.session.store), 0)


if __name__ == "__main__":
    unittest.main()
