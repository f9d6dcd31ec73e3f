import io
import unittest

from PIL import Image

from image_utils import _compress_bytes_to_limit, is_heic, prepare_upload, validate_image_file


def _png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class ImageProcessingTests(unittest.TestCase):
    def test_transparent_png_flattens_on_white_when_jpeg_requested(self) -> None:
        img = Image.new("RGBA", (10, 10), (0, 0, 0, 0))
        img.putpixel((5, 5), (255, 0, 0, 255))

        ok, out_bytes, ct, err = _compress_bytes_to_limit(_png_bytes(img), max_mb=1, purpose="notes",
                                                          prefer_fmt="JPEG")

        self.assertTrue(ok, msg=err)
        self.assertEqual(ct, "image/jpeg")
        out_img = Image.open(io.BytesIO(out_bytes))
        self.assertEqual(out_img.mode, "RGB")
        pixel = out_img.getpixel((0, 0))
        self.assertTrue(all(channel >= 250 for channel in pixel), msg=f"Pixel was not near white: {pixel}")

    def test_transparent_png_stays_png_when_it_fits(self) -> None:
        img = Image.new("RGBA", (8, 8), (0, 0, 0, 0))
        ok, _out, ct, err = _compress_bytes_to_limit(_png_bytes(img), max_mb=1, purpose="notes")
        self.assertTrue(ok, msg=err)
        self.assertEqual(ct, "image/png")

    def test_rejects_garbage_bytes(self) -> None:
        ok, out, _ct, err = _compress_bytes_to_limit(b"not an image", max_mb=1, purpose="notes")
        self.assertFalse(ok)
        self.assertEqual(out, b"")
        self.assertTrue(err)

    def test_validate_rejects_oversized_dimensions(self) -> None:
        img = Image.new("L", (4001, 2), 0)
        ok, msg = validate_image_file(_png_bytes(img), max_mb=5, purpose="notes")
        self.assertFalse(ok)
        self.assertIn("4001x2", msg)

    def test_is_heic_by_extension_and_brand(self) -> None:
        self.assertTrue(is_heic("IMG_0001.HEIC"))
        header = b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00"
        self.assertTrue(is_heic("upload.bin", header))
        self.assertFalse(is_heic("photo.jpg", b"\xff\xd8\xff\xe0" + b"\x00" * 12))

    def test_prepare_upload_passes_small_png_through(self) -> None:
        data = _png_bytes(Image.new("RGB", (20, 20), (10, 20, 30)))
        ok, out, ct, err = prepare_upload("notes.png", data, max_mb=1)
        self.assertTrue(ok, msg=err)
        self.assertEqual(out, data)
        self.assertEqual(ct, "image/png")

    def test_prepare_upload_reports_unreadable_heic(self) -> None:
        ok, _out, _ct, err = prepare_upload("broken.heic", b"garbage", max_mb=1)
        self.assertFalse(ok)
        self.assertIn("HEIC", err)


if __name__ == "__main__":
    unittest.main()
