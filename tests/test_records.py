import unittest
from datetime import datetime, timezone

from piicloud.errors import ValidationError
from piicloud.records import (
    FileRecord,
    StoreClock,
    UploadMeta,
    build_record,
    datetime_from_micros,
    datetime_to_micros,
    isoformat_utc,
    validate_original_name,
)

CREATED_AT = datetime(2026, 10, 18, 9, 30, 0, 250000, tzinfo=timezone.utc)


def make_upload(**overrides):
    values = {
        "original_name": "report.pdf",
        "stored_name": "file-1760779800250-000000004242.pdf",
        "storage_path": "/srv/uploads/file-1760779800250-000000004242.pdf",
        "size": 5000,
        "mime_type": "application/pdf",
    }
    values.update(overrides)
    return UploadMeta(**values)


class BuildRecordTests(unittest.TestCase):
    def test_builds_complete_record(self):
        record = build_record(
            make_upload(),
            "alice@example.com",
            "https://files.example.test/",
            created_at=CREATED_AT,
        )
        self.assertEqual(record.original_name, "report.pdf")
        self.assertEqual(record.owner_key, "alice_40example_2ecom")
        self.assertEqual(record.owner_id, "alice@example.com")
        self.assertEqual(record.size_bytes, 5000)
        self.assertEqual(record.mime_type, "application/pdf")
        self.assertEqual(
            record.access_url,
            "https://files.example.test/uploads/file-1760779800250-000000004242.pdf",
        )
        self.assertEqual(record.created_at, CREATED_AT)
        self.assertTrue(record.id)

    def test_ids_are_fresh_per_record(self):
        ids = {
            build_record(make_upload(), "a@b.c", "http://h", created_at=CREATED_AT).id
            for _ in range(100)
        }
        self.assertEqual(len(ids), 100)

    def test_access_url_quotes_stored_name(self):
        record = build_record(
            make_upload(stored_name="file-1-000000000001.my ext"),
            "a@b.c",
            "http://h",
            created_at=CREATED_AT,
        )
        self.assertEqual(record.access_url, "http://h/uploads/file-1-000000000001.my%20ext")

    def test_missing_mime_type_defaults(self):
        record = build_record(
            make_upload(mime_type=None), "a@b.c", "http://h", created_at=CREATED_AT
        )
        self.assertEqual(record.mime_type, "application/octet-stream")

    def test_rejects_missing_attachment(self):
        with self.assertRaises(ValidationError):
            build_record(None, "a@b.c", "http://h", created_at=CREATED_AT)

    def test_rejects_empty_owner(self):
        for identity in (None, "", "  "):
            with self.subTest(identity=identity):
                with self.assertRaises(ValidationError):
                    build_record(make_upload(), identity, "http://h", created_at=CREATED_AT)

    def test_rejects_bad_sizes(self):
        for size in (-1, 1.5, "10", None, True):
            with self.subTest(size=size):
                with self.assertRaises(ValidationError):
                    build_record(
                        make_upload(size=size), "a@b.c", "http://h", created_at=CREATED_AT
                    )

    def test_zero_size_is_valid(self):
        record = build_record(make_upload(size=0), "a@b.c", "http://h", created_at=CREATED_AT)
        self.assertEqual(record.size_bytes, 0)


class FileRecordSerializationTests(unittest.TestCase):
    def setUp(self):
        self.record = build_record(
            make_upload(), "alice@example.com", "http://h", created_at=CREATED_AT
        )

    def test_document_round_trip(self):
        self.assertEqual(FileRecord.from_document(self.record.to_document()), self.record)

    def test_descriptor_hides_server_paths(self):
        descriptor = self.record.to_descriptor()
        self.assertEqual(
            set(descriptor), {"id", "name", "size", "mimeType", "accessUrl", "createdAt"}
        )
        self.assertEqual(descriptor["name"], "report.pdf")
        self.assertEqual(descriptor["createdAt"], "2026-10-18T09:30:00.250000Z")


class TimestampTests(unittest.TestCase):
    def test_isoformat_always_has_microseconds(self):
        whole_second = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(isoformat_utc(whole_second), "2026-01-01T00:00:00.000000Z")

    def test_micros_conversion(self):
        self.assertEqual(datetime_from_micros(datetime_to_micros(CREATED_AT)), CREATED_AT)

    def test_clock_is_strictly_increasing(self):
        clock = StoreClock()
        stamps = [clock() for _ in range(1000)]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual(len(set(stamps)), len(stamps))


class ValidateOriginalNameTests(unittest.TestCase):
    def test_accepts_unicode_names_verbatim(self):
        self.assertEqual(validate_original_name("résumé (final).pdf"), "résumé (final).pdf")

    def test_rejects_invalid_names(self):
        for filename in ("", None, "a" * 256, "bad\x00name.txt"):
            with self.subTest(filename=filename):
                with self.assertRaises(ValidationError):
                    validate_original_name(filename)

    def test_rejects_overlong_extension(self):
        with self.assertRaises(ValidationError):
            validate_original_name("a." + "x" * 240)
        self.assertEqual(validate_original_name("a" * 240 + ".tar"), "a" * 240 + ".tar")


if __name__ == "__main__":
    unittest.main()
