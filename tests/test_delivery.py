import io
import tempfile
import unittest
import zipfile
from pathlib import Path

from bucketstore.content import ContentStore
from bucketstore.delivery import (
    IMMUTABLE_CACHE_CONTROL,
    DeliveryEngine,
    content_disposition,
    parse_range,
)
from bucketstore.errors import IntegrityFault, NotFoundError, UnsafePathError
from bucketstore.metadata import MetadataStore
from bucketstore.paths import BucketPath


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ParseRangeTests(unittest.TestCase):
    def test_closed_range(self):
        self.assertEqual(parse_range("bytes=0-4", 12), (0, 4))

    def test_open_ended_range(self):
        self.assertEqual(parse_range("bytes=5-", 12), (5, 11))

    def test_suffix_range(self):
        self.assertEqual(parse_range("bytes=-3", 12), (9, 11))
        self.assertEqual(parse_range("bytes=-100", 12), (0, 11))

    def test_end_is_clamped(self):
        self.assertEqual(parse_range("bytes=10-500", 12), (10, 11))

    def test_unsatisfiable_or_malformed(self):
        for header in (
            "bytes=12-",
            "bytes=12-20",
            "bytes=5-2",
            "bytes=-0",
            "bytes=-",
            "bytes=0-1,3-4",
            "items=0-4",
            "bytes=a-b",
            "",
        ):
            with self.subTest(header=header):
                self.assertIsNone(parse_range(header, 12))

    def test_empty_file_cannot_satisfy_a_range(self):
        self.assertIsNone(parse_range("bytes=0-", 0))
        self.assertIsNone(parse_range("bytes=-1", 0))


class ContentDispositionTests(unittest.TestCase):
    def test_ascii_name(self):
        value = content_disposition("README.md")
        self.assertTrue(value.startswith("inline;"))
        self.assertIn("README.md", value)
        self.assertNotIn("filename*", value)

    def test_quotes_are_escaped(self):
        value = content_disposition('say "hi".txt', "attachment")
        self.assertTrue(value.startswith("attachment;"))
        self.assertIn('\\"hi\\"', value)

    def test_non_ascii_name_has_fallback_and_utf8_form(self):
        value = content_disposition("résumé.pdf")
        self.assertIn("filename=resume.pdf", value)
        self.assertIn("filename*=UTF-8''r%C3%A9sum%C3%A9.pdf", value)

    def test_name_without_ascii_equivalent(self):
        value = content_disposition("報告")
        self.assertIn("filename=download", value)
        self.assertIn("filename*=UTF-8''%E5%A0%B1%E5%91%8A", value)


class DeliveryEngineTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.clock = FakeClock()
        self.metadata = MetadataStore(root / "db.sqlite", clock=self.clock)
        self.content = ContentStore(root / "files")
        self.engine = DeliveryEngine(self.metadata, self.content, clock=self.clock)
        self.bucket = self.metadata.create_bucket(
            name="Demo bucket", key_hash="hash", owner="alice", expires_at=int(self.clock.now) + 3600
        )

    def tearDown(self):
        self.temp_dir.cleanup()

    def _store(self, path, data, mime_type="text/plain", bucket_id=None):
        bucket_id = bucket_id or self.bucket.id
        self.content.put(bucket_id, path, [data])
        return self.metadata.upsert_file(bucket_id, BucketPath(path), len(data), mime_type)

    def test_full_download(self):
        self._store("docs/hello.txt", b"hello world!")
        result = self.engine.serve(self.bucket.id, "docs/hello.txt")
        self.assertEqual(result.status, 200)
        self.assertEqual(result.headers["Content-Length"], "12")
        self.assertEqual(result.headers["Content-Type"], "text/plain")
        self.assertEqual(result.headers["Accept-Ranges"], "bytes")
        self.assertEqual(result.headers["Cache-Control"], "public, max-age=3600")
        self.assertIn("hello.txt", result.headers["Content-Disposition"])
        self.assertEqual(b"".join(result.body), b"hello world!")

    def test_partial_download_is_byte_exact(self):
        data = bytes(range(256)) * 1024
        self._store("blob.bin", data, "application/octet-stream")
        result = self.engine.serve(self.bucket.id, "blob.bin", "bytes=1000-70000")
        self.assertEqual(result.status, 206)
        self.assertEqual(result.headers["Content-Range"], f"bytes 1000-70000/{len(data)}")
        self.assertEqual(result.headers["Content-Length"], "69001")
        self.assertEqual(b"".join(result.body), data[1000:70001])

    def test_unsatisfiable_range(self):
        self._store("a.txt", b"12345")
        result = self.engine.serve(self.bucket.id, "a.txt", "bytes=10-20")
        self.assertEqual(result.status, 416)
        self.assertEqual(result.headers["Content-Range"], "bytes */5")
        self.assertEqual(list(result.body), [])

    def test_permanent_bucket_is_cached_immutably(self):
        bucket = self.metadata.create_bucket(name="forever", key_hash="hash", owner="alice")
        self._store("a.txt", b"x", bucket_id=bucket.id)
        result = self.engine.serve(bucket.id, "a.txt")
        self.assertEqual(result.headers["Cache-Control"], IMMUTABLE_CACHE_CONTROL)
        result.body.close()

    def test_missing_and_expired(self):
        self._store("a.txt", b"x")
        with self.assertRaises(NotFoundError):
            self.engine.serve(self.bucket.id, "b.txt")
        with self.assertRaises(NotFoundError):
            self.engine.serve("nosuchbucket", "a.txt")
        with self.assertRaises(UnsafePathError):
            self.engine.serve(self.bucket.id, "../a.txt")
        self.clock.advance(3601)
        with self.assertRaises(NotFoundError):
            self.engine.serve(self.bucket.id, "a.txt")

    def test_row_without_bytes_is_an_integrity_fault(self):
        self.metadata.upsert_file(self.bucket.id, BucketPath("ghost.txt"), 4, "text/plain")
        with self.assertRaises(IntegrityFault):
            self.engine.serve(self.bucket.id, "ghost.txt")
        with self.assertRaises(IntegrityFault):
            self.engine.archive(self.bucket.id)

    def test_archive_contains_every_file(self):
        self._store("README.md", b"# Demo\n", "text/markdown")
        self._store("src/app.py", b"print('hi')\n" * 1000)
        result = self.engine.archive(self.bucket.id)

        self.assertEqual(result.status, 200)
        self.assertEqual(result.headers["Content-Type"], "application/zip")
        self.assertTrue(result.headers["Content-Disposition"].startswith("attachment;"))
        self.assertIn("Demo_bucket.zip", result.headers["Content-Disposition"])

        with zipfile.ZipFile(io.BytesIO(b"".join(result.body))) as archive:
            self.assertEqual(sorted(archive.namelist()), ["README.md", "src/app.py"])
            self.assertEqual(archive.read("src/app.py"), b"print('hi')\n" * 1000)
            self.assertIsNone(archive.testzip())

    def test_empty_bucket_has_no_archive(self):
        with self.assertRaises(NotFoundError):
            self.engine.archive(self.bucket.id)


if __name__ == "__main__":
    unittest.main()
