import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root / "src"))

from keycoach.services.models import NANOS_PER_MS, NANOS_PER_SECOND
from keycoach.services.settings_service import PracticeSettings, SettingsService


def clear_keycoach_env():
    for key in [k for k in os.environ if k.startswith("KEYCOACH_")]:
        del os.environ[key]


class TestPracticeSettings(unittest.TestCase):
    def test_defaults(self):
        settings = PracticeSettings()
        self.assertEqual(settings.bucket_width_ns, 5 * NANOS_PER_MS)
        self.assertEqual(settings.replay_window_ns, settings.bucket_width_ns)
        self.assertEqual(settings.chord_window_ns, 200 * NANOS_PER_MS)
        self.assertEqual(settings.run_break_ns, 4 * NANOS_PER_SECOND)

    def test_retention_floor(self):
        self.assertEqual(PracticeSettings(retention_s=30).retention_ns, 300 * NANOS_PER_SECOND)
        self.assertEqual(PracticeSettings(retention_s=900).retention_ns, 900 * NANOS_PER_SECOND)


class TestSettingsService(unittest.TestCase):
    def setUp(self):
        clear_keycoach_env()
        self.test_dir = Path(tempfile.mkdtemp())
        self.env_file = self.test_dir / ".env"

    def tearDown(self):
        clear_keycoach_env()
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_defaults_without_env_file(self):
        service = SettingsService()
        self.assertEqual(service.bucketWidthMs, 5.0)
        self.assertEqual(service.noteLatenessSeconds, 2.0)
        self.assertEqual(service.listenSeconds, 30.0)
        self.assertEqual(service.replayWindowMs, 5.0)
        self.assertEqual(service.sustainThreshold, 64)
        self.assertEqual(service.logLevel, "INFO")

    def test_env_file_is_loaded(self):
        self.env_file.write_text(
            "# practice room\nKEYCOACH_BUCKET_WIDTH_MS=10\nKEYCOACH_RETENTION_S=60\n", encoding="utf-8")
        service = SettingsService(self.test_dir)

        self.assertEqual(service.bucketWidthMs, 10.0)
        self.assertEqual(service.replayWindowMs, 10.0)
        self.assertEqual(service.retentionSeconds, 300.0)

        settings = service.practice_settings()
        self.assertEqual(settings.bucket_width_ns, 10 * NANOS_PER_MS)

    def test_real_environment_wins(self):
        os.environ["KEYCOACH_LISTEN_SECONDS"] = "45"
        self.env_file.write_text("KEYCOACH_LISTEN_SECONDS=10\n", encoding="utf-8")
        service = SettingsService(self.test_dir)
        self.assertEqual(service.listenSeconds, 45.0)

    def test_setter_writes_back(self):
        self.env_file.write_text("OTHER=1\n", encoding="utf-8")
        service = SettingsService(self.test_dir)
        changes = []
        service.settingsChanged.connect(lambda: changes.append(True))

        service.chordWindowMs = 150.0
        self.assertEqual(service.chordWindowMs, 150.0)
        self.assertEqual(changes, [True])
        contents = self.env_file.read_text(encoding="utf-8")
        self.assertIn("OTHER=1", contents)
        self.assertIn("KEYCOACH_CHORD_WINDOW_MS=150.0", contents)

    def test_bad_number_falls_back(self):
        os.environ["KEYCOACH_NOTE_LATENESS_S"] = "soon"
        service = SettingsService()
        with self.assertLogs("keycoach.services.settings_service", level="WARNING"):
            self.assertEqual(service.noteLatenessSeconds, 2.0)

    def test_reset_tolerances(self):
        service = SettingsService()
        service.bucketWidthMs = 8.0
        service.resetTolerances()
        self.assertEqual(service.bucketWidthMs, 5.0)


if __name__ == "__main__":
    unittest.main()
