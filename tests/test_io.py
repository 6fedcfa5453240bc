"""Tests for image I/O, output paths and texture discovery."""

import os
import shutil
import tempfile
import unittest

import numpy as np
from PIL import Image

from TextureBrew.core import (
    ensure_rgb,
    extract_alpha,
    find_textures,
    get_output_path,
    load_grayscale,
    load_image,
    make_local_temp_dir,
    merge_alpha,
    read_image_size,
    resize_to,
    save_image,
    to_grayscale,
)


class TestImageIO(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_save_load_rgb(self):
        arr = np.random.rand(64, 32, 3).astype(np.float32)
        path = os.path.join(self.tmpdir, "test_rgb.png")
        save_image(arr, path)
        loaded = load_image(path)
        self.assertEqual(loaded.shape, (64, 32, 3))
        self.assertEqual(loaded.dtype, np.float32)
        np.testing.assert_allclose(loaded, arr, atol=1.0 / 255)
        self.assertEqual(read_image_size(path), (32, 64))

    def test_grayscale_expands_to_rgb(self):
        arr = np.random.rand(16, 16).astype(np.float32)
        path = os.path.join(self.tmpdir, "gray.png")
        save_image(arr, path)
        self.assertEqual(load_image(path).shape, (16, 16, 3))
        self.assertEqual(load_grayscale(path).shape, (16, 16))

    def test_save_load_rgba(self):
        arr = np.random.rand(8, 8, 4).astype(np.float32)
        path = os.path.join(self.tmpdir, "rgba.png")
        save_image(arr, path)
        self.assertEqual(load_image(path).shape, (8, 8, 4))

    def test_save_8bit_rounding(self):
        path = os.path.join(self.tmpdir, "half.png")
        save_image(np.full((2, 2, 3), 0.5, dtype=np.float32), path)
        with Image.open(path) as img:
            self.assertEqual(img.getpixel((0, 0)), (128, 128, 128))

    def test_16bit_png(self):
        arr = np.linspace(0, 1, 64, dtype=np.float32).reshape(8, 8)
        path = os.path.join(self.tmpdir, "deep.png")
        save_image(arr, path, bits=16)
        loaded = load_image(path)
        np.testing.assert_allclose(loaded[..., 0], arr, atol=1.0 / 65535 * 2)

    def test_clipping(self):
        arr = np.full((4, 4, 3), 2.0, dtype=np.float32)
        arr[0, 0] = -1.0
        path = os.path.join(self.tmpdir, "clip.png")
        save_image(arr, path)
        loaded = load_image(path)
        self.assertEqual(float(loaded.max()), 1.0)
        self.assertEqual(float(loaded.min()), 0.0)

    def test_atomic_write_leaves_no_temp_files(self):
        path = os.path.join(self.tmpdir, "nested", "a.png")
        save_image(np.zeros((2, 2, 3), dtype=np.float32), path)
        self.assertEqual(os.listdir(os.path.dirname(path)), ["a.png"])

    def test_max_pixels(self):
        path = os.path.join(self.tmpdir, "big.png")
        save_image(np.zeros((32, 32, 3), dtype=np.float32), path)
        with self.assertRaises(ValueError):
            load_image(path, max_pixels=100)

    def test_corrupt_file_raises_ioerror(self):
        path = os.path.join(self.tmpdir, "bad.png")
        with open(path, "wb") as f:
            f.write(b"not a png")
        with self.assertRaises(IOError):
            load_image(path)

    def test_rejects_empty_array(self):
        with self.assertRaises(ValueError):
            save_image(np.zeros((0, 4), dtype=np.float32),
                       os.path.join(self.tmpdir, "empty.png"))


class TestChannelHelpers(unittest.TestCase):
    def test_ensure_rgb(self):
        self.assertEqual(ensure_rgb(np.zeros((4, 4))).shape, (4, 4, 3))
        self.assertEqual(ensure_rgb(np.zeros((4, 4, 4))).shape, (4, 4, 3))
        self.assertEqual(ensure_rgb(np.zeros((4, 4, 1))).shape, (4, 4, 3))

    def test_extract_merge_alpha(self):
        rgba = np.random.rand(4, 4, 4).astype(np.float32)
        alpha = extract_alpha(rgba)
        np.testing.assert_array_equal(alpha, rgba[..., 3])
        merged = merge_alpha(ensure_rgb(rgba), alpha)
        np.testing.assert_array_equal(merged, rgba)
        self.assertIsNone(extract_alpha(np.zeros((4, 4, 3))))

    def test_merge_alpha_rejects_invalid_shape(self):
        with self.assertRaises(ValueError):
            merge_alpha(np.zeros((4, 4, 3)), np.zeros((2, 2)))

    def test_to_grayscale_averages_rgb(self):
        rgb = np.zeros((2, 2, 4), dtype=np.float32)
        rgb[..., 0] = 0.3
        rgb[..., 3] = 1.0
        np.testing.assert_allclose(to_grayscale(rgb), 0.1, atol=1e-6)

    def test_resize_to(self):
        arr = np.random.rand(16, 8).astype(np.float32)
        self.assertEqual(resize_to(arr, 4, 8).shape, (8, 4))
        self.assertEqual(resize_to(arr, 16, 32).shape, (32, 16))
        self.assertIs(resize_to(arr, 8, 16), arr)


class TestPaths(unittest.TestCase):
    def test_output_path_mirrors_tree(self):
        out = get_output_path("sub/dir/rock.png", "/out", ext=".ktx2")
        self.assertEqual(out, os.path.join("/out", "sub", "dir", "rock.ktx2"))

    def test_output_path_rejects_escape(self):
        with self.assertRaises(ValueError):
            get_output_path("../rock.png", "/out")
        with self.assertRaises(ValueError):
            get_output_path("/abs/rock.png", "/out")

    def test_make_local_temp_dir(self):
        with tempfile.TemporaryDirectory() as base:
            a = make_local_temp_dir(base, prefix="mips_")
            b = make_local_temp_dir(base, prefix="mips_")
            self.assertNotEqual(a, b)
            self.assertTrue(os.path.basename(a).startswith("mips_"))
            self.assertTrue(os.path.isdir(a))


class TestFindTextures(unittest.TestCase):
    def test_recursive_sorted_and_filtered(self):
        with tempfile.TemporaryDirectory() as root:
            os.makedirs(os.path.join(root, "b"))
            for rel in ("z.png", "a.TGA", "notes.txt", os.path.join("b", "c.jpg")):
                with open(os.path.join(root, rel), "wb") as f:
                    f.write(b"x")
            found = [os.path.relpath(p, root) for p in find_textures(root)]
            self.assertEqual(found, ["a.TGA", "z.png", os.path.join("b", "c.jpg")])
            self.assertEqual(find_textures(root, [".jpg"]),
                             [os.path.join(root, "b", "c.jpg")])


if __name__ == "__main__":
    unittest.main(verbosity=2)
