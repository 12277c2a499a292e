import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path

from karaoke_api.services.cleanup import (
    cleanup_expired_outputs,
    cleanup_stale_temp_dirs,
    empty_directory,
)


class TestCleanup(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.tmp, ignore_errors=True)

    def test_expired_outputs_removed(self):
        out = self.tmp / "out"
        out.mkdir()
        old = out / "karaoke-old.mp4"
        new = out / "karaoke-new.mp4"
        other = out / "notes.txt"
        for path in (old, new, other):
            path.write_bytes(b"x")
        now = time.time()
        os.utime(old, (now - 7200, now - 7200))
        os.utime(other, (now - 7200, now - 7200))

        removed = cleanup_expired_outputs(out, 3600, now=now)

        self.assertEqual(removed, 1)
        self.assertFalse(old.exists())
        self.assertTrue(new.exists())
        self.assertTrue(other.exists())

    def test_stale_temp_dirs_skip_active_jobs(self):
        temp = self.tmp / "render"
        (temp / "job-a" / "frames").mkdir(parents=True)
        (temp / "job-b").mkdir()

        removed = cleanup_stale_temp_dirs(temp, active_ids={"job-b"})

        self.assertEqual(removed, 1)
        self.assertFalse((temp / "job-a").exists())
        self.assertTrue((temp / "job-b").exists())

    def test_empty_directory_keeps_dir_and_dotfiles(self):
        target = self.tmp / "uploads"
        (target / "nested").mkdir(parents=True)
        (target / "a.mp3").write_bytes(b"x")
        (target / ".gitkeep").write_bytes(b"")

        removed = empty_directory(target)

        self.assertEqual(removed, 2)
        self.assertTrue(target.is_dir())
        self.assertEqual([p.name for p in target.iterdir()], [".gitkeep"])

    def test_missing_directories_are_noops(self):
        self.assertEqual(cleanup_expired_outputs(self.tmp / "nope", 10), 0)
        self.assertEqual(cleanup_stale_temp_dirs(self.tmp / "nope"), 0)


if __name__ == "__main__":
    unittest.main()
