import logging
import time
from typing import Optional

import pretty_midi  # type: ignore
from PySide6.QtCore import QObject, Signal  # type: ignore

from keycoach.services.models import NANOS_PER_SECOND, note_name, seconds_to_ns
from keycoach.services.note_store import TimedNoteStore
from keycoach.services.practice_session import PracticeSession

logger = logging.getLogger(__name__)

NOTE_ON = 0x90
NOTE_OFF = 0x80
CONTROL_CHANGE = 0xB0
SUSTAIN_CONTROLLER = 64

# Shortest note written on export
MIN_DURATION_S = 0.05


class MidiIngestor(QObject):
    """Replays Standard MIDI Files into a session and writes the buffer back out."""
    # List of {"pitch", "name", "start_time", "duration"} dicts
    midiParsed = Signal(list)
    midiMetadata = Signal(dict)

    def ingest_file(self, file_path: str, session: PracticeSession, start_ns: Optional[int] = None) -> int:
        """
        Feed every note and sustain change of the piano track through the
        session's normalizer as if it had just been played. Returns the number
        of raw messages delivered.
        """
        try:
            logger.info("MidiIngestor: ingesting %s", file_path)
            pm = pretty_midi.PrettyMIDI(file_path)
        except (OSError, ValueError, EOFError) as e:
            logger.error("MidiIngestor: could not read %s: %s", file_path, e)
            self.midiParsed.emit([])
            return 0

        track = self._select_piano_track(pm)
        if track is None:
            logger.warning("MidiIngestor: no suitable track in %s", file_path)
            self.midiParsed.emit([])
            return 0

        # (time, order, message); at equal times releases go before new strikes
        messages = []
        for note in track.notes:
            messages.append((note.start, 2, [NOTE_ON, note.pitch, max(note.velocity, 1)]))
            messages.append((note.end, 0, [NOTE_OFF, note.pitch, 0]))
        for cc in track.control_changes:
            if cc.number == SUSTAIN_CONTROLLER:
                messages.append((cc.time, 1, [CONTROL_CHANGE, SUSTAIN_CONTROLLER, cc.value]))
        messages.sort(key=lambda m: (m[0], m[1]))

        base = time.monotonic_ns() if start_ns is None else start_ns
        for at, _, raw in messages:
            session.on_midi_data(bytes(raw), base + seconds_to_ns(at))

        self.midiMetadata.emit({
            "duration": pm.get_end_time(),
            "instruments": [i.name for i in pm.instruments],
            "note_count": len(track.notes),
            "selected_track": track.name,
        })
        notes = sorted(track.notes, key=lambda n: n.start)
        self.midiParsed.emit([
            {"pitch": n.pitch, "name": note_name(n.pitch), "start_time": n.start, "duration": n.end - n.start}
            for n in notes
        ])
        logger.info("MidiIngestor: replayed %d messages from %s", len(messages), track.name or "track")
        return len(messages)

    def _select_piano_track(self, pm: pretty_midi.PrettyMIDI) -> Optional[pretty_midi.Instrument]:
        """Acoustic grand if there is one, else the non-drum track with the most notes."""
        if not pm.instruments:
            return None
        for inst in pm.instruments:
            if not inst.is_drum and inst.program == 0 and inst.notes:
                return inst

        best_track = None
        max_notes = 0
        for inst in pm.instruments:
            if not inst.is_drum and len(inst.notes) > max_notes:
                max_notes = len(inst.notes)
                best_track = inst
        return best_track

    def export_buffer(self, store: TimedNoteStore, file_path: str) -> int:
        """Write the store's held intervals as a single piano track. Returns the note count."""
        intervals = sorted(store.intervals(), key=lambda iv: iv.start)
        pm = pretty_midi.PrettyMIDI()
        piano = pretty_midi.Instrument(program=0, name="KeyCoach")
        if intervals:
            origin = intervals[0].start
            latest = store.latest_timestamp
            for iv in intervals:
                start = (iv.start - origin) / NANOS_PER_SECOND
                end = ((iv.end if iv.closed else latest) - origin) / NANOS_PER_SECOND
                piano.notes.append(pretty_midi.Note(
                    velocity=iv.velocity or 64,
                    pitch=iv.pitch,
                    start=start,
                    end=max(end, start + MIN_DURATION_S),
                ))
        pm.instruments.append(piano)
        pm.write(file_path)
        logger.info("MidiIngestor: exported %d notes to %s", len(piano.notes), file_path)
        return len(piano.notes)
