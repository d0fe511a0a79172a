import io
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from piicloud import maintenance
from piicloud.blobs import BlobStore
from piicloud.errors import MetadataWriteFailure
from piicloud.metadata import MetadataStore
from piicloud.service import Attachment, FileService


def _age(path: Path, seconds: float) -> None:
    old = time.time() - seconds
    os.utime(path, (old, old))


class MaintenanceSweepTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.uploads = root / "uploads"
        self.service = FileService(
            BlobStore(self.uploads), MetadataStore(root / "files.db"), 1024
        )
        self.service.open()

    def tearDown(self):
        self.service.close()
        self.tmp.cleanup()

    def _ingest(self, filename="kept.txt"):
        return self.service.ingest(
            Attachment(filename=filename, stream=io.BytesIO(b"data")),
            "alice@example.com",
            "http://h",
        )

    def test_orphan_sweep_reclaims_only_old_unreferenced_blobs(self):
        kept = self._ingest()
        _age(Path(kept.storage_path), 7200)

        with mock.patch.object(
            self.service.records, "put", side_effect=MetadataWriteFailure("locked")
        ):
            with self.assertRaises(MetadataWriteFailure):
                self._ingest("orphan.txt")
        orphan = next(p for p in self.uploads.iterdir() if p.name != kept.stored_name)
        _age(orphan, 7200)

        recent_orphan = self.uploads / "file-recent-000000000000.txt"
        recent_orphan.write_bytes(b"in flight")

        removed = maintenance.sweep_orphaned_blobs(self.service, grace_seconds=3600)
        self.assertEqual(removed, 1)
        self.assertFalse(orphan.exists())
        self.assertTrue(Path(kept.storage_path).exists())
        self.assertTrue(recent_orphan.exists())

    def test_orphan_sweep_skips_when_store_closed(self):
        stray = self.uploads / "stray.bin"
        stray.write_bytes(b"x")
        _age(stray, 7200)
        self.service.close()

        self.assertEqual(maintenance.sweep_orphaned_blobs(self.service, 0), 0)
        self.assertTrue(stray.exists())

    def test_temp_sweep(self):
        stale = self.uploads / "file-1-000000000001.txt.tmp"
        stale.write_bytes(b"partial")
        _age(stale, maintenance.TEMP_FILE_MAX_AGE_SECONDS + 60)

        self.assertEqual(maintenance.sweep_temp_files(self.service), 1)
        self.assertFalse(stale.exists())

    def test_scheduler_registers_both_jobs(self):
        scheduler = maintenance.start_maintenance(self.service, 15, 600)
        try:
            job_ids = {job.id for job in scheduler.get_jobs()}
            self.assertEqual(job_ids, {"sweep_orphaned_blobs", "sweep_temp_files"})
            self.assertTrue(scheduler.running)
        finally:
            maintenance.stop_maintenance(scheduler)
        self.assertFalse(scheduler.running)


if __name__ == "__main__":
    unittest.main()
