import logging
import threading
import time
from typing import Callable, Optional, Sequence

import mido  # type: ignore

from keycoach.services.errors import DeviceDisconnected
from keycoach.services.practice_session import PracticeSession

logger = logging.getLogger(__name__)


def choose_input(names: Sequence[str]) -> str:
    """Pick the keyboard to listen to. With several attached the first one wins."""
    if not names:
        raise DeviceDisconnected("no MIDI input devices found")
    if len(names) > 1:
        logger.warning("MidiDevice: %d inputs found %s, using %s", len(names), list(names), names[0])
    return names[0]


def pair_output(input_name: str, output_names: Sequence[str]) -> Optional[str]:
    """
    Find the output port that belongs to the same keyboard as input_name.
    Software synths are skipped; a lone output is taken as the right one.
    """
    target_base = input_name.split(" ")[0] if " " in input_name else input_name
    for name in output_names:
        if target_base in name and "Synth" not in name:
            return name
    if len(output_names) == 1:
        return output_names[0]
    logger.warning("MidiDevice: no output paired with %s, found %s", input_name, list(output_names))
    return None


class MidiDevice:
    """
    Binds a physical keyboard to a PracticeSession. Input messages are
    forwarded from mido's callback thread; the reference for ear training is
    played back through the paired output.
    """

    def __init__(self, session: PracticeSession, input_name: Optional[str] = None,
                 output_port=None, clock: Callable[[], int] = time.monotonic_ns):
        self.session = session
        self.input_name = input_name
        self.output_port = output_port
        self._clock = clock
        self._input_port = None
        self._closed = False

    def open(self):
        names = mido.get_input_names()
        name = self.input_name if self.input_name in names else choose_input(names)
        self._input_port = mido.open_input(name, callback=self._on_message)
        self.input_name = name
        logger.info("MidiDevice: listening on %s", name)

        if self.output_port is None:
            out_name = pair_output(name, mido.get_output_names())
            if out_name is not None:
                self.output_port = mido.open_output(out_name)
                logger.info("MidiDevice: paired output %s", out_name)
        return self

    def _on_message(self, msg: mido.Message):
        """Runs on the backend's input thread."""
        if self._closed:
            return
        self.session.on_midi_data(msg.bytes(), self._clock())

    def send(self, msg: mido.Message):
        if self.output_port is None:
            return
        self.output_port.send(msg)

    def play_sequence(self, pitches: Sequence[int], gap_s: float = 0.5, velocity: int = 80,
                      blocking: bool = False) -> Optional[threading.Thread]:
        """Play pitches one after another, each held for gap_s."""
        notes = list(pitches)

        def run():
            for pitch in notes:
                self.send(mido.Message("note_on", note=pitch, velocity=velocity))
                time.sleep(gap_s)
                self.send(mido.Message("note_off", note=pitch, velocity=0))

        if blocking:
            run()
            return None
        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        return thread

    def close(self, reason: str = "device closed"):
        if self._closed:
            return
        self._closed = True
        for port in (self._input_port, self.output_port):
            if port is not None:
                port.close()
        self.session.stream_closed(reason)
        logger.info("MidiDevice: closed (%s)", reason)
