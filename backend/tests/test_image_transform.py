from __future__ import annotations

import io
import sys
import tempfile
import unittest
from pathlib import Path

from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.carimages.services.image_transform import Brand, BrandRegistry, ImageTransformer
from backend.carimages.utils.errors import InvalidIdentifierError
from backend.tests.support import image_size, jpeg_bytes, png_bytes


class ImageTransformerTests(unittest.TestCase):
    def setUp(self):
        self.transformer = ImageTransformer()

    def test_encode_is_progressive_jpeg_and_deterministic(self):
        raw = png_bytes(width=40, height=20, color=(10, 200, 10, 255))

        first = self.transformer.encode(raw)
        second = self.transformer.encode(raw)

        self.assertEqual(first, second)
        with Image.open(io.BytesIO(first)) as img:
            self.assertEqual(img.format, "JPEG")
            self.assertEqual(img.mode, "RGB")
            self.assertTrue(img.info.get("progressive") or img.info.get("progression"))
        self.assertEqual(image_size(first), (40, 20))

    def test_resize_keeps_aspect_ratio(self):
        out = self.transformer.encode(jpeg_bytes(width=200, height=100), 50)
        self.assertEqual(image_size(out), (50, 25))

        # 放大同样按比例
        out = self.transformer.encode(jpeg_bytes(width=20, height=10), 40)
        self.assertEqual(image_size(out), (40, 20))

    def test_encode_rejects_garbage(self):
        with self.assertRaises(OSError):
            self.transformer.encode(b"not an image")

    def test_composite_brand_keeps_size_and_paints_the_bottom(self):
        base = jpeg_bytes(width=64, height=48, color=(255, 255, 255))
        footer = png_bytes(width=16, height=4, color=(0, 0, 255, 255))

        out = self.transformer.composite_brand(base, footer)

        self.assertEqual(image_size(out), (64, 48))
        with Image.open(io.BytesIO(out)) as img:
            rgb = img.convert("RGB")
            top_r, top_g, top_b = rgb.getpixel((32, 2))
            bottom_r, bottom_g, bottom_b = rgb.getpixel((32, 46))
        self.assertGreater(top_r, 200)
        self.assertGreater(bottom_b, 150)
        self.assertLess(bottom_r, 80)


class BrandTests(unittest.TestCase):
    def test_parse(self):
        self.assertIs(Brand.parse("BRANDDSG"), Brand.BRANDDSG)
        with self.assertRaises(InvalidIdentifierError):
            Brand.parse("brand")
        with self.assertRaises(InvalidIdentifierError):
            Brand.parse(None)

    def test_registry_from_missing_file_disables_branding(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("backend.carimages.services.image_transform", level="WARNING"):
                registry = BrandRegistry.from_file(Path(tmp) / "missing.png")
            self.assertIsNone(registry.asset(Brand.BRAND))

            asset = Path(tmp) / "footer.png"
            asset.write_bytes(png_bytes())
            registry = BrandRegistry.from_file(asset)
            self.assertEqual(registry.asset(Brand.BRANDBOR), png_bytes())


if __name__ == "__main__":
    unittest.main()
