import io
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from piicloud.blobs import BlobStore
from piicloud.errors import PayloadTooLarge, StorageWriteFailure, ValidationError


class BlobStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "uploads"
        self.store = BlobStore(self.root)

    def tearDown(self):
        self.tmp.cleanup()

    def _entries(self):
        return sorted(path.name for path in self.root.iterdir())

    def test_root_created_on_construction_and_is_idempotent(self):
        self.assertTrue(self.root.is_dir())
        self.store.ensure_root()
        BlobStore(self.root)
        self.assertTrue(self.root.is_dir())

    def test_put_writes_blob(self):
        path, size = self.store.put("file-1-000000000001.txt", io.BytesIO(b"payload"), 100)
        self.assertEqual(size, 7)
        self.assertEqual(Path(path).read_bytes(), b"payload")
        self.assertEqual(Path(path).parent, self.root.resolve())
        self.assertTrue(self.store.exists(path))
        self.assertEqual(self._entries(), ["file-1-000000000001.txt"])

    def test_put_recreates_missing_root(self):
        self.root.rmdir()
        path, _ = self.store.put("file-2-000000000002", io.BytesIO(b"x"), 10)
        self.assertTrue(Path(path).exists())

    def test_empty_stream_is_allowed(self):
        path, size = self.store.put("empty", io.BytesIO(b""), 10)
        self.assertEqual(size, 0)
        self.assertTrue(self.store.exists(path))

    def test_exact_limit_is_accepted(self):
        _, size = self.store.put("exact", io.BytesIO(b"x" * 64), 64)
        self.assertEqual(size, 64)

    def test_one_byte_over_limit_is_rejected_and_cleaned_up(self):
        with self.assertRaises(PayloadTooLarge) as ctx:
            self.store.put("over", io.BytesIO(b"x" * 65), 64)
        self.assertEqual(ctx.exception.limit_bytes, 64)
        self.assertEqual(self._entries(), [])

    def test_write_failure_is_wrapped_and_cleaned_up(self):
        with mock.patch("pathlib.Path.replace", side_effect=OSError("No space left on device")):
            with self.assertRaises(StorageWriteFailure):
                self.store.put("broken", io.BytesIO(b"data"), 100)
        self.assertEqual(self._entries(), [])

    def test_remove_reports_missing_blob(self):
        path, _ = self.store.put("gone", io.BytesIO(b"x"), 10)
        self.assertTrue(self.store.remove(path))
        self.assertFalse(self.store.remove(path))
        self.assertFalse(self.store.exists(path))

    def test_paths_outside_root_are_refused(self):
        outside = Path(self.tmp.name) / "outside.txt"
        outside.write_bytes(b"keep")
        with self.assertRaises(ValidationError):
            self.store.remove(str(outside))
        self.assertFalse(self.store.exists(str(outside)))
        self.assertTrue(outside.exists())

    def test_stored_names_with_separators_are_refused(self):
        for stored_name in ("", ".", "..", "../escape", "a/b", "a\\b"):
            with self.subTest(stored_name=stored_name):
                with self.assertRaises(ValidationError):
                    self.store.path_for(stored_name)

    def test_iter_blobs_skips_partial_uploads(self):
        self.store.put("done", io.BytesIO(b"x"), 10)
        (self.root / "pending.tmp").write_bytes(b"partial")
        self.assertEqual([path.name for path in self.store.iter_blobs()], ["done"])

    def test_remove_stale_temp_files(self):
        stale = self.root / "stale.tmp"
        fresh = self.root / "fresh.tmp"
        stale.write_bytes(b"old")
        fresh.write_bytes(b"new")
        old = time.time() - 7200
        os.utime(stale, (old, old))

        removed = self.store.remove_stale_temp_files(3600)
        self.assertEqual(removed, 1)
        self.assertEqual(self._entries(), ["fresh.tmp"])


if __name__ == "__main__":
    unittest.main()
