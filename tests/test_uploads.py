import sys
import tempfile
import unittest
from io import BytesIO
from pathlib import Path

from werkzeug.datastructures import FileStorage, MultiDict

sys.path.insert(0, str(Path(__file__).parent.parent))

from remote_workspace.errors import (  # noqa: E402
    InvalidFilenameError,
    InvalidUploadError,
    UploadConflictError,
)
from remote_workspace.uploads import (  # noqa: E402
    is_image_upload,
    pick_upload,
    require_valid_filename,
    resolve_named_image,
    sanitize_upload_filename,
    validate_upload_filename,
    write_upload,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def make_upload(data=PNG_BYTES, filename="shot.png", content_type="image/png"):
    return FileStorage(stream=BytesIO(data), filename=filename, content_type=content_type)


class FilenamePolicyTests(unittest.TestCase):
    def test_sanitize_strips_directories_and_controls(self):
        self.assertEqual(sanitize_upload_filename("../../etc/shot.png"), "shot.png")
        self.assertEqual(sanitize_upload_filename("C:\\Users\\me\\shot.png"), "shot.png")
        self.assertEqual(sanitize_upload_filename("  sh\x07ot.png  "), "shot.png")

    def test_sanitize_falls_back_to_timestamp_name(self):
        self.assertEqual(sanitize_upload_filename("", now=1.5), "upload-1500")
        self.assertEqual(sanitize_upload_filename("dir/", now=2), "upload-2000")
        self.assertEqual(sanitize_upload_filename("..", now=3), "upload-3000")

    def test_validation_reasons(self):
        cases = {
            "": "Filename is required",
            "a b.png": "Filename cannot contain spaces",
            ".hidden.png": "Filename is invalid",
            "caf\u00e9.png": "Filename may only contain letters, numbers, dot, underscore, and dash",
            "x.exe": "Filename must use an allowed image extension",
            "noextension": "Filename must use an allowed image extension",
        }
        for name, reason in cases.items():
            with self.subTest(name=name):
                self.assertEqual(validate_upload_filename(name), reason)

    def test_accepted_names(self):
        for name in ("a.png", "Shot_01-final.JPG", "diagram.svg", "photo.heic"):
            with self.subTest(name=name):
                self.assertIsNone(validate_upload_filename(name))

    def test_require_valid_filename_raises(self):
        with self.assertRaises(InvalidFilenameError) as ctx:
            require_valid_filename("a b.png")
        self.assertEqual(ctx.exception.message, "Filename cannot contain spaces")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_resolve_named_image_stays_in_directory(self):
        directory = Path(tempfile.gettempdir()).resolve() / "clipboard"
        self.assertEqual(resolve_named_image(directory, "../a.png"), directory / "a.png")


class PickUploadTests(unittest.TestCase):
    def test_primary_field(self):
        upload = make_upload()
        self.assertIs(pick_upload(MultiDict([("file", upload)])), upload)

    def test_legacy_field(self):
        upload = make_upload()
        self.assertIs(pick_upload(MultiDict([("files", upload)])), upload)

    def test_unknown_fields_are_ignored(self):
        upload = make_upload()
        files = MultiDict([("attachment", make_upload()), ("file", upload)])
        self.assertIs(pick_upload(files), upload)

    def test_missing_file(self):
        with self.assertRaises(InvalidUploadError) as ctx:
            pick_upload(MultiDict([("attachment", make_upload())]))
        self.assertEqual(ctx.exception.message, "Missing upload file")

    def test_more_than_one_file(self):
        files = MultiDict([("file", make_upload()), ("files", make_upload())])
        with self.assertRaises(InvalidUploadError) as ctx:
            pick_upload(files)
        self.assertEqual(ctx.exception.message, "Only one file may be uploaded per request")

    def test_non_image_rejected(self):
        files = MultiDict([("file", make_upload(filename="notes.txt", content_type="text/plain"))])
        with self.assertRaises(InvalidUploadError) as ctx:
            pick_upload(files)
        self.assertEqual(ctx.exception.message, "Only image uploads are allowed")

    def test_image_mimetype_with_foreign_extension_rejected(self):
        self.assertFalse(is_image_upload("payload.exe", "image/png"))
        self.assertTrue(is_image_upload("blob", "image/png"))
        self.assertTrue(is_image_upload("a.PNG", "IMAGE/PNG"))


class WriteUploadTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.directory = Path(self.tmp.name).resolve()

    def tearDown(self):
        self.tmp.cleanup()

    def test_writes_new_file(self):
        target = write_upload(make_upload(), self.directory, "a.png")
        self.assertEqual(target, self.directory / "a.png")
        self.assertEqual(target.read_bytes(), PNG_BYTES)

    def test_existing_file_is_never_overwritten(self):
        (self.directory / "a.png").write_bytes(b"original")
        with self.assertRaises(UploadConflictError) as ctx:
            write_upload(make_upload(), self.directory, "a.png")
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual((self.directory / "a.png").read_bytes(), b"original")

    def test_failed_copy_removes_partial_file(self):
        class BrokenStream(BytesIO):
            def read(self, *args, **kwargs):
                raise OSError("connection reset")

        upload = FileStorage(stream=BrokenStream(), filename="a.png", content_type="image/png")
        with self.assertRaises(OSError):
            write_upload(upload, self.directory, "a.png")
        self.assertFalse((self.directory / "a.png").exists())

    def test_invalid_name_never_touches_disk(self):
        with self.assertRaises(InvalidFilenameError):
            write_upload(make_upload(), self.directory, "x.exe")
        self.assertEqual(list(self.directory.iterdir()), [])


if __name__ == "__main__":
    unittest.main()
