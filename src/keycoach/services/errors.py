class PracticeError(Exception):
    """Base class for errors raised by the practice core."""


class MalformedMessage(PracticeError):
    """A raw MIDI message could not be decoded. Dropped by the normalizer."""

    def __init__(self, raw, reason: str):
        super().__init__(f"malformed MIDI message {list(raw) if raw is not None else raw}: {reason}")
        self.raw = raw
        self.reason = reason


class DeviceDisconnected(PracticeError):
    """The input stream closed. Fatal to the current session."""


class PatternNotFound(PracticeError, LookupError):
    def __init__(self, name: str):
        super().__init__(f"no pattern named '{name}'")
        self.name = name
