"""
keycoach - screen-free piano practice core.

Listens to live MIDI, keeps a timed note store and verifies scales, chords and
ear-training echoes against the pattern library.
"""

__version__ = "0.1.0"
