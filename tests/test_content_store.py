import os
import shutil
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from bucketstore.content import ContentStore
from bucketstore.errors import MalformedInputError, UnsafePathError


class ContentStoreTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name) / "files"
        self.store = ContentStore(self.root)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _read(self, bucket_id, path):
        handle = self.store.open(bucket_id, path)
        self.assertIsNotNone(handle)
        with handle:
            return handle.read()

    def test_put_writes_chunks_and_returns_size(self):
        size = self.store.put("bucket1", "docs/readme.md", [b"hello ", b"", b"world"])
        self.assertEqual(size, 11)
        self.assertEqual(self._read("bucket1", "docs/readme.md"), b"hello world")
        self.assertTrue((self.root / "bucket1" / "docs" / "readme.md").is_file())

    def test_put_replaces_existing_file(self):
        self.store.put("bucket1", "a.txt", [b"first version"])
        self.store.put("bucket1", "a.txt", [b"second"])
        self.assertEqual(self._read("bucket1", "a.txt"), b"second")
        self.assertEqual(self.store.stat_size("bucket1", "a.txt"), 6)

    def test_put_leaves_no_temp_files(self):
        self.store.put("bucket1", "a.txt", [b"data"])
        self.assertEqual(sorted(os.listdir(self.root / "bucket1")), ["a.txt"])

    def test_failed_write_keeps_previous_content(self):
        self.store.put("bucket1", "a.txt", [b"original"])

        def broken_chunks():
            yield b"partial"
            raise OSError("client went away")

        with self.assertRaises(OSError):
            self.store.put("bucket1", "a.txt", broken_chunks())
        self.assertEqual(self._read("bucket1", "a.txt"), b"original")
        self.assertEqual(sorted(os.listdir(self.root / "bucket1")), ["a.txt"])

    def test_traversal_is_rejected(self):
        for path in ("../escape.txt", "a/../../escape.txt"):
            with self.subTest(path=path):
                with self.assertRaises(UnsafePathError):
                    self.store.put("bucket1", path, [b"x"])
        self.assertFalse((self.root / "escape.txt").exists())

    def test_invalid_bucket_id_is_rejected(self):
        with self.assertRaises(UnsafePathError):
            self.store.resolve("../other", "a.txt")

    def test_symlink_escape_is_rejected(self):
        outside = Path(self.temp_dir.name) / "outside"
        outside.mkdir()
        (self.root / "bucket1").mkdir(parents=True)
        os.symlink(outside, self.root / "bucket1" / "link")
        with self.assertRaises(UnsafePathError):
            self.store.put("bucket1", "link/evil.txt", [b"x"])
        self.assertEqual(list(outside.iterdir()), [])

    def test_file_and_directory_conflicts(self):
        self.store.put("bucket1", "docs", [b"a file"])
        with self.assertRaises(MalformedInputError):
            self.store.put("bucket1", "docs/inner.txt", [b"x"])

        self.store.put("bucket1", "src/main.py", [b"print()"])
        with self.assertRaises(MalformedInputError):
            self.store.put("bucket1", "src", [b"x"])

    def test_open_missing_returns_none(self):
        self.assertIsNone(self.store.open("bucket1", "missing.txt"))
        self.assertIsNone(self.store.stat_size("bucket1", "missing.txt"))

    def test_delete_file_is_idempotent_and_prunes_directories(self):
        self.store.put("bucket1", "a/b/c.txt", [b"x"])
        self.store.put("bucket1", "keep.txt", [b"y"])
        self.assertTrue(self.store.delete_file("bucket1", "a/b/c.txt"))
        self.assertFalse(self.store.delete_file("bucket1", "a/b/c.txt"))
        self.assertFalse((self.root / "bucket1" / "a").exists())
        self.assertTrue((self.root / "bucket1").is_dir())

    def test_delete_bucket_is_idempotent(self):
        self.store.put("bucket1", "a/b.txt", [b"x"])
        self.store.delete_bucket("bucket1")
        self.assertFalse((self.root / "bucket1").exists())
        self.store.delete_bucket("bucket1")

    def test_concurrent_delete_bucket_leaves_nothing_behind(self):
        for trial in range(5):
            with self.subTest(trial=trial):
                for index in range(60):
                    self.store.put("bucket1", f"d{index % 7}/sub{index % 3}/f{index}.bin", [b"x" * 64])
                workers = 4
                barrier = threading.Barrier(workers)
                errors = []

                def delete():
                    barrier.wait()
                    try:
                        self.store.delete_bucket("bucket1")
                    except Exception as error:  # pragma: no cover - surfaced below
                        errors.append(error)

                threads = [threading.Thread(target=delete) for _ in range(workers)]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join(timeout=30)

                self.assertEqual(errors, [])
                self.assertFalse((self.root / "bucket1").exists())
                self.assertEqual(self.store.bucket_dirs(), [])

    def test_delete_bucket_finishes_after_racing_delete(self):
        self.store.put("bucket1", "a/b.txt", [b"x"])
        real_rmtree = shutil.rmtree
        calls = []

        def racing_rmtree(path, *args, **kwargs):
            calls.append(path)
            if len(calls) == 1:
                raise FileNotFoundError("removed by another deleter")
            return real_rmtree(path, *args, **kwargs)

        with mock.patch("bucketstore.content.shutil.rmtree", side_effect=racing_rmtree):
            self.store.delete_bucket("bucket1")
        self.assertEqual(len(calls), 2)
        self.assertFalse((self.root / "bucket1").exists())

    def test_bucket_dirs_lists_valid_ids(self):
        self.store.put("bucket1", "a.txt", [b"x"])
        self.store.put("bucket2", "a.txt", [b"x"])
        (self.root / "not a bucket").mkdir()
        (self.root / "stray.txt").write_bytes(b"")
        self.assertEqual(self.store.bucket_dirs(), ["bucket1", "bucket2"])

    def test_cleanup_only_removes_stale_generated_temp_files(self):
        bucket_dir = self.root / "bucket1"
        bucket_dir.mkdir(parents=True)
        stale = bucket_dir / f".a.txt.{'0' * 32}.tmp"
        fresh = bucket_dir / f".b.txt.{'1' * 32}.tmp"
        user_file = bucket_dir / "notes.tmp"
        for path in (stale, fresh, user_file):
            path.write_bytes(b"x")
        os.utime(stale, (1000, 1000))
        os.utime(fresh, (9000, 9000))
        os.utime(user_file, (1000, 1000))

        removed = self.store.cleanup_temp_files(max_age_seconds=3600, now=10000)

        self.assertEqual(removed, 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())
        self.assertTrue(user_file.exists())


if __name__ == "__main__":
    unittest.main()
