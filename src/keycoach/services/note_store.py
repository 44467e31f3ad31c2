"""
Timed note store.

Append-only, time-bucketed index of normalized note events and the held
intervals derived from them. Every event is stored once as the authoritative
reference in the bucket its timestamp falls in, and once more as a shadow
reference in each neighbouring bucket so lookups near a bucket boundary find
it without scanning. Range queries only ever count authoritative references.
Closed held intervals are kept per pitch, ordered by start, for is_held().

The normalizer is the only writer. Verification engines read through a cursor
(a sequence number) and block in wait_for_append() until the writer appends.
"""
import logging
import threading
from bisect import bisect_left, bisect_right
from typing import Callable, Optional

from keycoach.services.errors import DeviceDisconnected
from keycoach.services.models import (
    HeldInterval,
    NoteEvent,
    NoteKind,
    StoredEvent,
    TimeBucket,
    NANOS_PER_SECOND,
)
from keycoach.services.settings_service import PracticeSettings

logger = logging.getLogger(__name__)


class TimedNoteStore:
    def __init__(self, settings: Optional[PracticeSettings] = None):
        self.settings = settings or PracticeSettings()
        self.bucket_width = self.settings.bucket_width_ns
        self.run_break = self.settings.run_break_ns
        self._retention_ns = self.settings.retention_ns

        self._cond = threading.Condition(threading.RLock())
        self._buckets: dict[int, TimeBucket] = {}
        # Authoritative references in arrival order; index = seq - _base_seq
        self._log: list[StoredEvent] = []
        self._base_seq = 0
        self._next_seq = 0

        self._open: dict[int, HeldInterval] = {}
        # pitch -> closed intervals by start; intervals of one pitch never overlap
        self._closed: dict[int, list[HeldInterval]] = {}
        self._intervals: list[HeldInterval] = []  # by start, open and closed
        self._latest = 0
        self._evict_mark = 0
        self._closed_reason: Optional[str] = None

    # ── Bucket helpers ────────────────────────────────────────────────

    def bucket_index(self, t: int) -> int:
        return t // self.bucket_width

    def _bucket(self, index: int) -> TimeBucket:
        bucket = self._buckets.get(index)
        if bucket is None:
            bucket = TimeBucket(index)
            self._buckets[index] = bucket
        return bucket

    # ── Writes (normalizer only) ──────────────────────────────────────

    def append(self, event: NoteEvent) -> StoredEvent:
        with self._cond:
            if self._closed_reason is not None:
                raise DeviceDisconnected(self._closed_reason)
            ref = StoredEvent(event, self._next_seq)
            self._next_seq += 1
            self._log.append(ref)

            b = self.bucket_index(event.timestamp)
            self._bucket(b).entries.append(ref)
            shadow = ref.shadow()
            self._bucket(b - 1).entries.append(shadow)
            self._bucket(b + 1).entries.append(shadow)

            self._latest = max(self._latest, event.timestamp)
            self._maybe_evict()
            self._cond.notify_all()
            return ref

    def open_interval(self, pitch: int, at: int, velocity: int = 0) -> HeldInterval:
        """Start holding a pitch. A pitch that is still held is re-struck."""
        with self._cond:
            current = self._open.get(pitch)
            if current is not None:
                self._close(current, at)
            interval = HeldInterval(pitch=pitch, start=at, velocity=velocity)
            self._open[pitch] = interval
            self._intervals.append(interval)
            return interval

    def release_interval(self, pitch: int) -> Optional[HeldInterval]:
        """Key went up but the pedal keeps the note sounding."""
        with self._cond:
            interval = self._open.get(pitch)
            if interval is not None:
                interval.released = True
            return interval

    def close_interval(self, pitch: int, at: int) -> Optional[HeldInterval]:
        with self._cond:
            interval = self._open.get(pitch)
            if interval is None:
                return None
            self._close(interval, at)
            return interval

    def close_released(self, at: int) -> list[HeldInterval]:
        """Pedal came up: every physically released note stops sounding."""
        with self._cond:
            closing = [iv for iv in self._open.values() if iv.released]
            for interval in closing:
                self._close(interval, at)
            return closing

    def _close(self, interval: HeldInterval, at: int):
        interval.close(at)
        self._open.pop(interval.pitch, None)
        self._closed.setdefault(interval.pitch, []).append(interval)
        self._latest = max(self._latest, at)

    def clear(self):
        """Drop all recorded events. Keys still physically down stay held."""
        with self._cond:
            self._buckets.clear()
            self._base_seq = self._next_seq
            self._log = []
            self._closed.clear()
            self._intervals = list(self._open.values())
            logger.info("TimedNoteStore: buffer cleared")

    def close(self, reason: str = "stream closed"):
        with self._cond:
            self._closed_reason = reason
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed_reason is not None

    # ── Retention ─────────────────────────────────────────────────────

    @property
    def retention_ns(self) -> int:
        return self._retention_ns

    def require_retention(self, listen_ns: int):
        """Keep at least one listen window of history."""
        with self._cond:
            self._retention_ns = max(self._retention_ns, listen_ns)

    def _maybe_evict(self):
        cutoff = self._latest - self._retention_ns
        # Sweep at most ten times per retention window
        if cutoff <= 0 or cutoff - self._evict_mark < self._retention_ns // 10:
            return
        self._evict_mark = cutoff
        cutoff_bucket = self.bucket_index(cutoff)

        stale = [index for index in self._buckets if index < cutoff_bucket]
        for index in stale:
            del self._buckets[index]

        drop = bisect_left(self._log, cutoff, key=lambda ref: ref.event.timestamp)
        if drop:
            del self._log[:drop]
            self._base_seq += drop

        self._intervals = [iv for iv in self._intervals if not iv.closed or iv.end >= cutoff]
        for pitch in list(self._closed):
            kept = [iv for iv in self._closed[pitch] if iv.end >= cutoff]
            if kept:
                self._closed[pitch] = kept
            else:
                del self._closed[pitch]
        logger.debug("TimedNoteStore: evicted %d buckets and %d events older than %d", len(stale), drop, cutoff)

    # ── Queries ───────────────────────────────────────────────────────

    def _closed_covers(self, pitch: int, t: int, eps: int) -> bool:
        intervals = self._closed.get(pitch)
        if not intervals:
            return False
        # Ends are ordered like starts, so walk back until one ends too early
        j = bisect_right(intervals, t + eps, key=lambda iv: iv.start) - 1
        while j >= 0 and intervals[j].end + eps >= t:
            if intervals[j].covers(t, eps):
                return True
            j -= 1
        return False

    def held_at(self, t: int) -> set[int]:
        eps = self.bucket_width
        with self._cond:
            held = {p for p, iv in self._open.items() if iv.covers(t, eps)}
            held.update(p for p in self._closed if p not in held and self._closed_covers(p, t, eps))
            return held

    def is_held(self, pitch: int, t: int) -> bool:
        eps = self.bucket_width
        with self._cond:
            interval = self._open.get(pitch)
            if interval is not None and interval.covers(t, eps):
                return True
            return self._closed_covers(pitch, t, eps)

    def events_between(self, t0: int, t1: int, fuzzy: bool = False) -> list[NoteEvent]:
        """
        Authoritative events with t0 <= timestamp <= t1, by timestamp then arrival.

        With fuzzy=True the range snaps out to whole buckets and also picks up
        events whose shadow lands in the range, so notes struck together but
        split by a bucket boundary come back together.
        """
        if t1 < t0:
            return []
        lo, hi = self.bucket_index(t0), self.bucket_index(t1)
        found: list[StoredEvent] = []
        with self._cond:
            for index in range(lo, hi + 1):
                bucket = self._buckets.get(index)
                if bucket is None:
                    continue
                for ref in bucket.entries:
                    if ref.authoritative:
                        if fuzzy or t0 <= ref.event.timestamp <= t1:
                            found.append(ref)
                    elif fuzzy and not lo <= self.bucket_index(ref.event.timestamp) <= hi:
                        found.append(ref)
        found.sort(key=lambda ref: (ref.event.timestamp, ref.seq))
        return [ref.event for ref in found]

    def run_bounds(self, pitch_sequence: list[int]) -> Optional[tuple[int, int]]:
        """
        Start and end of the first run that contains pitch_sequence in order,
        beginning at an occurrence of its first pitch. A run is a chain of held
        intervals with no gap longer than the run break between them.
        """
        if not pitch_sequence:
            return None
        with self._cond:
            intervals = sorted(self._intervals, key=lambda iv: iv.start)
            latest = self._latest

        runs: list[list[HeldInterval]] = []
        run_end = None
        for iv in intervals:
            end = iv.end if iv.closed else latest
            if run_end is None or iv.start > run_end + self.run_break:
                runs.append([])
                run_end = end
            runs[-1].append(iv)
            run_end = max(run_end, end)

        for run in runs:
            pitches = [iv.pitch for iv in run]
            for i, pitch in enumerate(pitches):
                if pitch != pitch_sequence[0]:
                    continue
                if _contains_in_order(pitches[i + 1:], pitch_sequence[1:]):
                    start = run[0].start
                    end = max(iv.end if iv.closed else latest for iv in run)
                    return start, end
        return None

    # ── Reader cursor ─────────────────────────────────────────────────

    def cursor_at(self, t: int) -> int:
        """Sequence number of the first event at or after t."""
        with self._cond:
            i = bisect_left(self._log, t, key=lambda ref: ref.event.timestamp)
            return self._base_seq + i

    def next_event(self, cursor: int, kind: Optional[NoteKind] = None) -> Optional[StoredEvent]:
        return self.scan(cursor, kind)[0]

    def scan(self, cursor: int, kind: Optional[NoteKind] = None) -> tuple[Optional[StoredEvent], int]:
        """
        First event of the given kind at or after cursor, and the cursor to
        resume from. When nothing matches, the resume cursor is past every
        event scanned, so waiting on it only wakes for a new append.
        """
        with self._cond:
            i = max(cursor - self._base_seq, 0)
            while i < len(self._log):
                ref = self._log[i]
                if kind is None or ref.event.kind is kind:
                    return ref, ref.seq + 1
                i += 1
            return None, max(cursor, self._next_seq)

    def wait_for_append(self, cursor: int, timeout: float, cancelled: Optional[Callable[[], bool]] = None) -> bool:
        """
        Block until an event with seq >= cursor exists, the store closes, the
        caller is cancelled or the timeout (seconds) passes. Returns True if
        there is something new to read.
        """
        def ready():
            return (self._next_seq > cursor or self._closed_reason is not None
                    or (cancelled is not None and cancelled()))

        with self._cond:
            self._cond.wait_for(ready, timeout=max(timeout, 0.0))
            if cancelled is not None and cancelled():
                return self._next_seq > cursor
            if self._closed_reason is not None and self._next_seq <= cursor:
                raise DeviceDisconnected(self._closed_reason)
            return self._next_seq > cursor

    def wake(self):
        """Wake every waiting reader so it can re-check its cancel flag."""
        with self._cond:
            self._cond.notify_all()

    # ── Console support ───────────────────────────────────────────────

    @property
    def latest_timestamp(self) -> int:
        return self._latest

    def recent_events(self, seconds: Optional[float] = None) -> list[NoteEvent]:
        with self._cond:
            if seconds is None:
                return [ref.event for ref in self._log]
            since = self._latest - int(seconds * NANOS_PER_SECOND)
            return [ref.event for ref in self._log if ref.event.timestamp >= since]

    def open_intervals(self) -> list[HeldInterval]:
        with self._cond:
            return list(self._open.values())

    def intervals(self) -> list[HeldInterval]:
        with self._cond:
            return list(self._intervals)

    def __len__(self) -> int:
        return len(self._log)


def _contains_in_order(haystack: list[int], needles: list[int]) -> bool:
    it = iter(haystack)
    return all(any(p == n for p in it) for n in needles)
