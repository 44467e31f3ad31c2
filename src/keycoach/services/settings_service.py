import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from PySide6.QtCore import QObject, Property, Signal, Slot  # type: ignore

from keycoach.services.models import NANOS_PER_MS, Tolerance, seconds_to_ns

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MIN_RETENTION_S = 300.0

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PracticeSettings:
    """Immutable snapshot of the tolerances the core runs with."""
    bucket_width_ms: float = 5.0
    note_lateness_s: float = 2.0
    listen_seconds: float = 30.0
    retention_s: float = MIN_RETENTION_S
    chord_window_ms: float = 200.0
    run_break_s: float = 4.0
    replay_window_ms: Optional[float] = None  # None -> one bucket width
    sustain_threshold: int = 64

    @property
    def bucket_width_ns(self) -> int:
        return max(1, int(self.bucket_width_ms * NANOS_PER_MS))

    @property
    def retention_ns(self) -> int:
        return seconds_to_ns(max(self.retention_s, MIN_RETENTION_S))

    @property
    def chord_window_ns(self) -> int:
        return int(self.chord_window_ms * NANOS_PER_MS)

    @property
    def run_break_ns(self) -> int:
        return seconds_to_ns(self.run_break_s)

    @property
    def replay_window_ns(self) -> int:
        if self.replay_window_ms is None:
            return self.bucket_width_ns
        return int(self.replay_window_ms * NANOS_PER_MS)

    @property
    def tolerance(self) -> Tolerance:
        return Tolerance(max_note_lateness_s=self.note_lateness_s, max_total_s=self.listen_seconds)


def load_env_file(env_file: Path):
    """Seed os.environ from a KEY=VALUE file without overriding real env vars."""
    if not env_file.exists():
        return
    try:
        with open(env_file, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except UnicodeDecodeError:
        with open(env_file, "r", encoding="utf-16") as f:
            lines = f.readlines()

    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        os.environ.setdefault(key.strip(), val.strip())


def init_logging(level: str = "INFO", log_dir: Optional[Path] = None):
    """Console logging for host applications, plus a rotating file when log_dir is set."""
    root = logging.getLogger()
    if root.handlers:
        return

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(log_dir / "keycoach.log", maxBytes=2 * 1024 * 1024, backupCount=3, encoding="utf-8")
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)


class SettingsService(QObject):
    settingsChanged = Signal()

    def __init__(self, project_root: Optional[Path] = None):
        super().__init__()
        self.env_file = (project_root / ".env") if project_root else None
        if self.env_file is not None:
            load_env_file(self.env_file)

    # ── Generic .env helpers ──────────────────────────────────────────

    def _get_env(self, key: str, default: str = "") -> str:
        return os.environ.get(key, default)

    def _get_float(self, key: str, default: float) -> float:
        raw = self._get_env(key)
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            logger.warning("SettingsService: ignoring non-numeric %s=%r, using %s", key, raw, default)
            return default

    def _set_env(self, key: str, val: str):
        if os.environ.get(key) == val:
            return
        os.environ[key] = val
        if self.env_file is None:
            return
        lines = []
        if self.env_file.exists():
            with open(self.env_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

        new_lines = []
        found = False
        for line in lines:
            if line.strip().startswith(f"{key}="):
                new_lines.append(f"{key}={val}\n")
                found = True
            else:
                new_lines.append(line)
        if not found:
            new_lines.append(f"{key}={val}\n")

        with open(self.env_file, "w", encoding="utf-8") as f:
            f.writelines(new_lines)

    def _set_number(self, key: str, val):
        self._set_env(key, str(val))
        self.settingsChanged.emit()

    # ── Timing tolerances ─────────────────────────────────────────────

    @Property(float, notify=settingsChanged)
    def bucketWidthMs(self) -> float:
        return self._get_float("KEYCOACH_BUCKET_WIDTH_MS", 5.0)

    @bucketWidthMs.setter  # type: ignore
    def bucketWidthMs(self, val: float):
        self._set_number("KEYCOACH_BUCKET_WIDTH_MS", val)

    @Property(float, notify=settingsChanged)
    def noteLatenessSeconds(self) -> float:
        return self._get_float("KEYCOACH_NOTE_LATENESS_S", 2.0)

    @noteLatenessSeconds.setter  # type: ignore
    def noteLatenessSeconds(self, val: float):
        self._set_number("KEYCOACH_NOTE_LATENESS_S", val)

    @Property(float, notify=settingsChanged)
    def listenSeconds(self) -> float:
        return self._get_float("KEYCOACH_LISTEN_SECONDS", 30.0)

    @listenSeconds.setter  # type: ignore
    def listenSeconds(self, val: float):
        self._set_number("KEYCOACH_LISTEN_SECONDS", val)

    @Property(float, notify=settingsChanged)
    def retentionSeconds(self) -> float:
        return max(self._get_float("KEYCOACH_RETENTION_S", MIN_RETENTION_S), MIN_RETENTION_S)

    @Property(float, notify=settingsChanged)
    def chordWindowMs(self) -> float:
        return self._get_float("KEYCOACH_CHORD_WINDOW_MS", 200.0)

    @chordWindowMs.setter  # type: ignore
    def chordWindowMs(self, val: float):
        self._set_number("KEYCOACH_CHORD_WINDOW_MS", val)

    @Property(float, notify=settingsChanged)
    def runBreakSeconds(self) -> float:
        return self._get_float("KEYCOACH_RUN_BREAK_S", 4.0)

    @Property(float, notify=settingsChanged)
    def replayWindowMs(self) -> float:
        return self._get_float("KEYCOACH_REPLAY_WINDOW_MS", self.bucketWidthMs)

    @Property(int, notify=settingsChanged)
    def sustainThreshold(self) -> int:
        return int(self._get_float("KEYCOACH_SUSTAIN_THRESHOLD", 64))

    @Property(str, notify=settingsChanged)
    def logLevel(self) -> str:
        return self._get_env("KEYCOACH_LOG_LEVEL", "INFO")

    # ── Snapshot for the core ─────────────────────────────────────────

    def practice_settings(self) -> PracticeSettings:
        return PracticeSettings(
            bucket_width_ms=self.bucketWidthMs,
            note_lateness_s=self.noteLatenessSeconds,
            listen_seconds=self.listenSeconds,
            retention_s=self.retentionSeconds,
            chord_window_ms=self.chordWindowMs,
            run_break_s=self.runBreakSeconds,
            replay_window_ms=self.replayWindowMs,
            sustain_threshold=self.sustainThreshold,
        )

    @Slot()
    def resetTolerances(self):
        for key in (
            "KEYCOACH_BUCKET_WIDTH_MS",
            "KEYCOACH_NOTE_LATENESS_S",
            "KEYCOACH_LISTEN_SECONDS",
            "KEYCOACH_CHORD_WINDOW_MS",
            "KEYCOACH_REPLAY_WINDOW_MS",
        ):
            os.environ.pop(key, None)
        self.settingsChanged.emit()
