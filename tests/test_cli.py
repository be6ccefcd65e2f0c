import contextlib
import errno
import io
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import dedupe_hardlinks
from tests.utils import same_inode, write_file


class TestMain(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()

    def tearDown(self):
        logger = logging.getLogger(dedupe_hardlinks.LOGGER_NAME)
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        self._tmp.cleanup()

    def main(self, *args):
        with contextlib.redirect_stdout(self.stdout), contextlib.redirect_stderr(self.stderr):
            return dedupe_hardlinks.main([str(arg) for arg in args])

    def test_dry_run_is_default(self):
        a = write_file(self.root / "a.txt", b"hello")
        b = write_file(self.root / "b.txt", b"hello")

        self.assertEqual(self.main(self.root), 0)
        self.assertIn(f"[{a}, {b}]", self.stdout.getvalue())
        self.assertIn("Dry run: no changes made.", self.stdout.getvalue())
        self.assertFalse(same_inode(a, b))

        self.assertEqual(self.main("--dry-run", self.root), 0)
        self.assertFalse(same_inode(a, b))

    def test_apply(self):
        a = write_file(self.root / "one" / "a.txt", b"hello")
        b = write_file(self.root / "two" / "b.txt", b"hello")

        self.assertEqual(self.main("--apply", self.root / "one", self.root / "two"), 0)
        self.assertTrue(same_inode(a, b))
        self.assertIn("Space freed is about 5 B.", self.stdout.getvalue())

    def test_no_duplicates(self):
        write_file(self.root / "a.txt", b"hello")

        self.assertEqual(self.main("-a", self.root), 0)
        self.assertEqual(self.stdout.getvalue(), "No duplicates found.\n")

    def test_mutation_error_exits_nonzero(self):
        write_file(self.root / "a.txt", b"hello")
        write_file(self.root / "b.txt", b"hello")

        with mock.patch("dedupe_hardlinks.os.link", side_effect=OSError(errno.EPERM, "Operation not permitted")):
            self.assertEqual(self.main("--apply", self.root), 1)

        self.assertIn("[ERROR] Failed to link", self.stderr.getvalue())
        self.assertNotIn("Space freed is about", self.stdout.getvalue())

    def test_invalid_options(self):
        self.assertEqual(self.main("--min-bytes", "-1", self.root), 1)
        self.assertEqual(self.main("--chunk-size", "0", self.root), 1)
        self.assertIn("Chunk size must be a positive integer.", self.stderr.getvalue())

    def test_apply_and_dry_run_are_exclusive(self):
        with self.assertRaises(SystemExit) as ctx:
            self.main("--apply", "--dry-run", self.root)
        self.assertEqual(ctx.exception.code, 2)

    def test_paths_required(self):
        with self.assertRaises(SystemExit) as ctx:
            self.main()
        self.assertEqual(ctx.exception.code, 2)

    def test_log_file(self):
        write_file(self.root / "data" / "a.txt", b"hello")
        log_path = self.root / "run.log"

        self.assertEqual(self.main("--log", log_path, self.root / "missing", self.root / "data"), 0)

        log_text = log_path.read_text(encoding="utf-8")
        self.assertIn("WARNING Cannot read", log_text)
        self.assertIn("[WARNING] Cannot read", self.stderr.getvalue())

    def test_verbose_prints_summary(self):
        write_file(self.root / "a.txt", b"hello")
        write_file(self.root / "b.txt", b"hello")

        self.assertEqual(self.main("-v", self.root), 0)
        self.assertIn("[INFO] Examined 2 files", self.stderr.getvalue())

    def test_progress_bar(self):
        write_file(self.root / "a.txt", b"hello")
        write_file(self.root / "b.txt", b"hello")

        self.assertEqual(self.main("--progress", self.root), 0)
        self.assertIn("Hashing", self.stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
