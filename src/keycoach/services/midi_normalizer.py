import logging
from typing import Optional, Sequence, Union

import mido  # type: ignore

from keycoach.services.errors import MalformedMessage
from keycoach.services.models import NoteEvent, NoteKind, PedalChange, PedalState
from keycoach.services.note_store import TimedNoteStore

logger = logging.getLogger(__name__)

SUSTAIN_CONTROLLER = 64

RawMessage = Union[bytes, bytearray, Sequence[int]]


class MidiNormalizer:
    """
    Turns raw device messages into NoteEvents / PedalChanges and is the only
    writer of the session's TimedNoteStore.
    """

    def __init__(self, store: TimedNoteStore, pedal: Optional[PedalState] = None, sustain_threshold: int = 64):
        self.store = store
        self.pedal = pedal if pedal is not None else PedalState()
        self.sustain_threshold = sustain_threshold
        self.malformed_count = 0
        self.dropped_count = 0
        self._last_time = 0

    def _parse(self, raw_message: RawMessage) -> mido.Message:
        if not raw_message:
            raise MalformedMessage(raw_message, "empty message")
        try:
            return mido.Message.from_bytes(list(raw_message))
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise MalformedMessage(raw_message, str(e)) from e

    def normalize(self, raw_message: RawMessage, arrival_time: int) -> Optional[Union[NoteEvent, PedalChange]]:
        """
        Decode one message. Returns None for traffic the core does not care
        about (clock, active sensing, other controllers) and for malformed
        messages, which are logged and counted but never raised.
        """
        try:
            msg = self._parse(raw_message)
        except MalformedMessage as e:
            self.malformed_count += 1
            logger.warning("MidiNormalizer: dropping %s", e)
            return None

        # Device timestamps jitter; keep the store's view monotonic
        timestamp = max(arrival_time, self._last_time)

        if msg.type == "note_on" or msg.type == "note_off":
            is_down = msg.type == "note_on" and msg.velocity > 0
            self._last_time = timestamp
            return NoteEvent(
                pitch=msg.note,
                velocity=msg.velocity,
                kind=NoteKind.DOWN if is_down else NoteKind.UP,
                timestamp=timestamp,
                source_channel=msg.channel,
            )

        if msg.type == "control_change" and msg.control == SUSTAIN_CONTROLLER:
            down = msg.value >= self.sustain_threshold
            self._last_time = timestamp
            self.pedal.down = down
            return PedalChange(down=down, timestamp=timestamp, source_channel=msg.channel)

        self.dropped_count += 1
        logger.debug("MidiNormalizer: ignoring %s", msg.type)
        return None

    def ingest(self, raw_message: RawMessage, arrival_time: int) -> Optional[Union[NoteEvent, PedalChange]]:
        """Normalize a message and apply it to the store."""
        was_down = self.pedal.down
        result = self.normalize(raw_message, arrival_time)
        if isinstance(result, NoteEvent):
            self.apply_note(result)
        elif isinstance(result, PedalChange):
            self.apply_pedal(result, was_down)
        return result

    def apply_note(self, event: NoteEvent):
        self.store.append(event)
        if event.is_down:
            self.store.open_interval(event.pitch, event.timestamp, event.velocity)
        elif self.pedal.down:
            # Keep sounding until the pedal comes up or the key is struck again
            self.store.release_interval(event.pitch)
        else:
            self.store.close_interval(event.pitch, event.timestamp)

    def apply_pedal(self, change: PedalChange, was_down: bool):
        if was_down and not change.down:
            closed = self.store.close_released(change.timestamp)
            if closed:
                logger.debug("MidiNormalizer: pedal up released %s", [iv.pitch for iv in closed])

    def close_stream(self, reason: str = "device disconnected"):
        logger.warning("MidiNormalizer: input stream closed (%s)", reason)
        self.store.close(reason)
