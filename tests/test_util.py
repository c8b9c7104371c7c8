import os
import tempfile
import unittest
from datetime import datetime

os.environ.setdefault("KT_HOME", tempfile.mkdtemp(prefix="kt_test_home_"))


class TestFormatting(unittest.TestCase):

    def test_format_time(self):
        from kt.util import format_time
        self.assertEqual(format_time(0), "00:00:00")
        self.assertEqual(format_time(3725), "01:02:05")
        self.assertEqual(format_time(-12), "00:00:00")

    def test_format_amount(self):
        from kt.util import format_amount
        self.assertEqual(format_amount(50), "C$ 50")
        self.assertEqual(format_amount(12.5, "USD"), "USD 12.50")
        self.assertEqual(format_amount(None), "C$ 0")

    def test_iso_helpers(self):
        from kt.util import iso_from_ms, now_iso
        self.assertIsNone(iso_from_ms(None))
        parsed = datetime.fromisoformat(iso_from_ms(1_700_000_000_000))
        self.assertEqual(parsed.timestamp(), 1_700_000_000)
        self.assertIsNotNone(datetime.fromisoformat(now_iso()).tzinfo)


class TestPaths(unittest.TestCase):

    def test_build_creates_data_folders(self):
        import shutil
        from pathlib import Path
        from kt.common.setup import ProjectPaths
        root = Path(tempfile.mkdtemp()) / "kt_data"
        try:
            paths = ProjectPaths.build(root)
            for folder in (paths.logs, paths.current, paths.snapshots, paths.sessions):
                self.assertTrue(folder.is_dir())
            self.assertEqual(paths.sessions.name, "completed_shifts")
        finally:
            shutil.rmtree(root.parent, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
