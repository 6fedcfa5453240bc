"""Tests for KTX2 metadata blocks and key/value injection."""

import os
import struct
import tempfile
import unittest

import numpy as np

from TextureBrew.config import (
    CompressionSettings,
    HistogramChannelMode,
    HistogramMode,
    HistogramQuantization,
    HistogramSettings,
)
from TextureBrew.phases.histogram import HistogramResult
from TextureBrew.phases.ktx2 import (
    KTX2_IDENTIFIER,
    METADATA_KEY,
    Ktx2FormatError,
    NormalLayout,
    TlvType,
    build_metadata_payload,
    decode_tlv_blocks,
    encode_tlv,
    histogram_block,
    inject_key_value,
    normal_layout_for,
    read_header,
    read_key_values,
)

LEVEL_DATA = b"\xAA" * 16


def _minimal_ktx2(path):
    """Write a one-level 4x4 KTX2 with a tiny DFD, no KVD and no SGD."""
    dfd_offset, dfd_length = 104, 4
    level_offset = 112
    header = struct.pack("<12s9I", KTX2_IDENTIFIER, 37, 1, 4, 4, 0, 0, 1, 1, 0)
    index = struct.pack("<4I2Q", dfd_offset, dfd_length, 0, 0, 0, 0)
    levels = struct.pack("<3Q", level_offset, len(LEVEL_DATA), len(LEVEL_DATA))
    dfd = struct.pack("<I", dfd_length)
    body = header + index + levels + dfd
    body += b"\x00" * (level_offset - len(body))
    with open(path, "wb") as f:
        f.write(body + LEVEL_DATA)


def _level_bytes(path):
    header = read_header(path)
    offset, length, _ = header.levels[0]
    with open(path, "rb") as f:
        data = f.read()
    return data[offset:offset + length]


class TestTlv(unittest.TestCase):
    def test_blocks_are_padded_to_four_bytes(self):
        block = encode_tlv(TlvType.NORMAL_LAYOUT, 0, b"\x01")
        self.assertEqual(len(block), 8)
        self.assertEqual(block[:4], bytes([0x20, 0x00, 0x01, 0x00]))

    def test_decode_splits_blocks(self):
        data = encode_tlv(0x01, 0x10, b"\x00" * 4) + encode_tlv(0x20, 0, b"\x05")
        blocks = decode_tlv_blocks(data)
        self.assertEqual([(t, f) for t, f, _ in blocks], [(0x01, 0x10), (0x20, 0)])
        self.assertEqual(blocks[1][2], b"\x05")

    def test_decode_rejects_overrun(self):
        with self.assertRaises(Ktx2FormatError):
            decode_tlv_blocks(struct.pack("<BBH", 1, 0, 40) + b"\x00" * 4)

    def test_histogram_block_quantization_flags(self):
        result = HistogramResult(scale=[0.5], offset=[0.25])
        half = decode_tlv_blocks(histogram_block(result))[0]
        self.assertEqual(half[0], TlvType.HIST_SCALAR)
        self.assertEqual(half[1], 0x10)
        np.testing.assert_array_equal(np.frombuffer(half[2], dtype="<f2"), [0.5, 0.25])

        full = decode_tlv_blocks(histogram_block(result, HistogramQuantization.FLOAT32))[0]
        self.assertEqual(full[1], 0x10 | (2 << 2))
        np.testing.assert_array_equal(np.frombuffer(full[2], dtype="<f4"), [0.5, 0.25])

    def test_histogram_block_type_follows_channels(self):
        cases = [
            (HistogramResult(scale=[1, 1, 1], offset=[0, 0, 0]), TlvType.HIST_PER_CHANNEL_3),
            (HistogramResult(scale=[1] * 4, offset=[0] * 4), TlvType.HIST_PER_CHANNEL_4),
            (HistogramResult(scale=[0.5], offset=[0.1],
                             channel_mode=HistogramChannelMode.RGB_ONLY), TlvType.HIST_RGB),
        ]
        for result, expected in cases:
            with self.subTest(expected=expected):
                self.assertEqual(decode_tlv_blocks(histogram_block(result))[0][0], expected)


class TestMetadataPayload(unittest.TestCase):
    def test_empty_when_nothing_applies(self):
        self.assertEqual(build_metadata_payload(), b"")
        self.assertEqual(build_metadata_payload(HistogramResult.identity()), b"")

    def test_histogram_and_params(self):
        settings = HistogramSettings(mode=HistogramMode.PERCENTILE)
        result = HistogramResult(mode=HistogramMode.PERCENTILE, scale=[0.5], offset=[0.25])
        blocks = decode_tlv_blocks(build_metadata_payload(result, settings))
        self.assertEqual([b[0] for b in blocks], [TlvType.HIST_SCALAR, TlvType.HIST_PARAMS])
        params = blocks[1]
        self.assertEqual(params[1], 1)
        np.testing.assert_allclose(np.frombuffer(params[2], dtype="<f2"),
                                   [5.0, 95.0, 0.02], rtol=1e-3)

    def test_knee_result_only_writes_params(self):
        settings = HistogramSettings(mode=HistogramMode.PERCENTILE_WITH_KNEE)
        result = HistogramResult(mode=settings.mode, scale=[0.5], offset=[0.25],
                                 knee_applied=True)
        blocks = decode_tlv_blocks(build_metadata_payload(result, settings))
        self.assertEqual([b[0] for b in blocks], [TlvType.HIST_PARAMS])
        self.assertEqual(blocks[0][1], 2)

    def test_normal_layout(self):
        self.assertEqual(normal_layout_for(CompressionSettings.uastc_default()), NormalLayout.RG)
        self.assertEqual(normal_layout_for(CompressionSettings()), NormalLayout.RGBXAY)
        blocks = decode_tlv_blocks(build_metadata_payload(normal_layout=NormalLayout.RGBXAY))
        self.assertEqual(blocks, [(TlvType.NORMAL_LAYOUT, 0, bytes([5]))])


class TestKeyValueInjection(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "tex.ktx2")
        _minimal_ktx2(self.path)

    def tearDown(self):
        self._tmp.cleanup()

    def test_minimal_file_parses(self):
        header = read_header(self.path)
        self.assertEqual((header.width, header.height, header.level_count), (4, 4, 1))
        self.assertEqual(read_key_values(self.path), {})

    def test_inject_into_empty_kvd_shifts_levels(self):
        inject_key_value(self.path, METADATA_KEY, b"\x01\x02\x03\x04\x05\x06\x07\x08")
        header = read_header(self.path)
        self.assertEqual(header.kvd_offset, 108)
        self.assertEqual(header.kvd_length, 20)
        self.assertEqual(header.levels[0][0], 112 + 32)
        self.assertEqual(header.levels[0][0] % 16, 0)
        self.assertEqual(_level_bytes(self.path), LEVEL_DATA)
        self.assertEqual(read_key_values(self.path),
                         {METADATA_KEY: b"\x01\x02\x03\x04\x05\x06\x07\x08"})

    def test_keys_stay_sorted(self):
        inject_key_value(self.path, METADATA_KEY, b"meta")
        inject_key_value(self.path, "KTXwriter", b"test")
        self.assertEqual(list(read_key_values(self.path)), ["KTXwriter", METADATA_KEY])
        self.assertEqual(_level_bytes(self.path), LEVEL_DATA)

    def test_replacing_key_keeps_single_entry(self):
        inject_key_value(self.path, METADATA_KEY, b"\x00" * 8)
        first = read_header(self.path).levels[0][0]
        inject_key_value(self.path, METADATA_KEY, b"abcd")
        header = read_header(self.path)
        self.assertEqual(read_key_values(self.path), {METADATA_KEY: b"abcd"})
        self.assertEqual(header.levels[0][0], first)
        self.assertEqual(_level_bytes(self.path), LEVEL_DATA)

    def test_rejects_non_ktx2(self):
        bad = os.path.join(self._tmp.name, "bad.ktx2")
        with open(bad, "wb") as f:
            f.write(b"\x00" * 128)
        with self.assertRaises(Ktx2FormatError):
            inject_key_value(bad, METADATA_KEY, b"x")
        with self.assertRaises(Ktx2FormatError):
            read_header(bad)


if __name__ == "__main__":
    unittest.main(verbosity=2)
