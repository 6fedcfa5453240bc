"""KTX2 container helpers: metadata TLV blocks and key/value injection.

Runtime metadata is stored under the ``pc.meta`` key as a sequence of
4-byte aligned TLV blocks::

    type u8 | flags u8 | length u16 LE | payload | zero pad to 4 bytes
"""

import logging
import os
import struct
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import (
    CompressionSettings,
    HistogramChannelMode,
    HistogramMode,
    HistogramQuantization,
    HistogramSettings,
)
from .histogram import HistogramResult

logger = logging.getLogger("texture_pipeline.ktx2")

KTX2_IDENTIFIER = bytes([0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB,
                         0x0D, 0x0A, 0x1A, 0x0A])
METADATA_KEY = "pc.meta"

_HEADER = struct.Struct("<12s9I")
_INDEX = struct.Struct("<4I2Q")
_LEVEL = struct.Struct("<3Q")
HEADER_SIZE = _HEADER.size + _INDEX.size  # 80

# Keeps every section after the KVD on its original alignment.
_SHIFT_ALIGNMENT = 16


class Ktx2FormatError(ValueError):
    """Raised when a file is not a well-formed KTX2 container."""


class TlvType(IntEnum):
    HIST_SCALAR = 0x01
    HIST_RGB = 0x02
    HIST_PER_CHANNEL_3 = 0x03
    HIST_PER_CHANNEL_4 = 0x04
    HIST_PARAMS = 0x10
    NORMAL_LAYOUT = 0x20
    CHANNEL_SWIZZLE = 0x21


class NormalLayout(IntEnum):
    NONE = 0
    RG = 1
    GA = 2
    RGB = 3
    AG = 4
    RGBXAY = 5


_QUANT_CODES = {
    HistogramQuantization.HALF16: (0, "<f2"),
    HistogramQuantization.FLOAT32: (2, "<f4"),
}

_MODE_CODES = {
    HistogramMode.OFF: 0,
    HistogramMode.PERCENTILE: 1,
    HistogramMode.PERCENTILE_WITH_KNEE: 2,
    HistogramMode.LOCAL_OUTLIER_PATCH: 3,
}


def _pad4(data: bytes) -> bytes:
    return data + b"\x00" * (-len(data) % 4)


def encode_tlv(tlv_type: int, flags: int, payload: bytes) -> bytes:
    if len(payload) > 0xFFFF:
        raise ValueError(f"TLV payload too large: {len(payload)} bytes")
    return _pad4(struct.pack("<BBH", int(tlv_type), flags & 0xFF, len(payload)) + payload)


def decode_tlv_blocks(data: bytes) -> List[Tuple[int, int, bytes]]:
    """Split a ``pc.meta`` value into ``(type, flags, payload)`` tuples."""
    blocks = []
    pos = 0
    while pos + 4 <= len(data):
        tlv_type, flags, length = struct.unpack_from("<BBH", data, pos)
        start = pos + 4
        if start + length > len(data):
            raise Ktx2FormatError(f"TLV block at {pos} overruns the metadata value")
        blocks.append((tlv_type, flags, bytes(data[start:start + length])))
        pos = start + length + (-length % 4)
    return blocks


def _histogram_tlv_type(result: HistogramResult) -> TlvType:
    if result.channel_count == 4:
        return TlvType.HIST_PER_CHANNEL_4
    if result.channel_count == 3:
        return TlvType.HIST_PER_CHANNEL_3
    if result.channel_mode == HistogramChannelMode.RGB_ONLY:
        return TlvType.HIST_RGB
    return TlvType.HIST_SCALAR


def histogram_block(result: HistogramResult,
                    quantization: HistogramQuantization = HistogramQuantization.HALF16) -> bytes:
    """Scale/offset block: all scales, then all offsets."""
    quant_code, dtype = _QUANT_CODES[quantization]
    values = np.asarray(list(result.scale) + list(result.offset), dtype=dtype)
    flags = 0x10 | (quant_code << 2)
    return encode_tlv(_histogram_tlv_type(result), flags, values.tobytes())


def histogram_params_block(settings: HistogramSettings) -> bytes:
    payload = np.asarray(
        [settings.percentile_low, settings.percentile_high, settings.knee_width],
        dtype="<f2",
    ).tobytes()
    return encode_tlv(TlvType.HIST_PARAMS, _MODE_CODES[settings.mode], payload)


def normal_layout_block(layout: NormalLayout) -> bytes:
    return encode_tlv(TlvType.NORMAL_LAYOUT, 0, bytes([int(layout)]))


def normal_layout_for(settings: CompressionSettings) -> NormalLayout:
    """ETC1S stores X in RGB and Y in A; UASTC keeps X/Y in R/G."""
    return NormalLayout.RG if settings.is_uastc else NormalLayout.RGBXAY


def build_metadata_payload(histogram: Optional[HistogramResult] = None,
                           histogram_settings: Optional[HistogramSettings] = None,
                           normal_layout: Optional[NormalLayout] = None) -> bytes:
    """Concatenate the TLV blocks that apply; empty bytes when none do.

    Soft-knee results only record their parameters: the curve is not
    invertible with a scale/offset pair.
    """
    blocks = b""
    if histogram is not None and histogram.success and not histogram.is_identity:
        if not histogram.knee_applied:
            quantization = (histogram_settings.quantization if histogram_settings
                            else HistogramQuantization.HALF16)
            blocks += histogram_block(histogram, quantization)
        if histogram_settings is not None:
            blocks += histogram_params_block(histogram_settings)
    if normal_layout is not None and normal_layout != NormalLayout.NONE:
        blocks += normal_layout_block(normal_layout)
    return blocks


@dataclass
class Ktx2Header:
    vk_format: int
    type_size: int
    width: int
    height: int
    depth: int
    layer_count: int
    face_count: int
    level_count: int
    supercompression_scheme: int
    dfd_offset: int
    dfd_length: int
    kvd_offset: int
    kvd_length: int
    sgd_offset: int
    sgd_length: int
    levels: List[Tuple[int, int, int]] = field(default_factory=list)


def parse_header(data: bytes) -> Ktx2Header:
    if len(data) < HEADER_SIZE or data[:12] != KTX2_IDENTIFIER:
        raise Ktx2FormatError("missing KTX2 identifier")
    fields = _HEADER.unpack_from(data, 0)[1:]
    index = _INDEX.unpack_from(data, _HEADER.size)
    header = Ktx2Header(*fields, *index)
    count = max(1, header.level_count)
    if HEADER_SIZE + count * _LEVEL.size > len(data):
        raise Ktx2FormatError("level index is truncated")
    for i in range(count):
        header.levels.append(_LEVEL.unpack_from(data, HEADER_SIZE + i * _LEVEL.size))
    for name, offset, length in (("DFD", header.dfd_offset, header.dfd_length),
                                 ("KVD", header.kvd_offset, header.kvd_length),
                                 ("SGD", header.sgd_offset, header.sgd_length)):
        if length and offset + length > len(data):
            raise Ktx2FormatError(f"{name} block extends past end of file")
    return header


def read_header(path: str) -> Ktx2Header:
    with open(path, "rb") as f:
        return parse_header(f.read())


def _parse_kvd(block: bytes) -> List[Tuple[str, bytes]]:
    entries = []
    pos = 0
    while pos + 4 <= len(block):
        (length,) = struct.unpack_from("<I", block, pos)
        body = block[pos + 4:pos + 4 + length]
        if len(body) != length or b"\x00" not in body:
            raise Ktx2FormatError(f"malformed key/value entry at KVD offset {pos}")
        key, value = body.split(b"\x00", 1)
        entries.append((key.decode("utf-8"), value))
        pos += 4 + length + (-length % 4)
    return entries


def _build_kvd(entries: List[Tuple[str, bytes]]) -> bytes:
    out = b""
    for key, value in entries:
        body = key.encode("utf-8") + b"\x00" + value
        out += _pad4(struct.pack("<I", len(body)) + body)
    return out


def read_key_values(path: str) -> Dict[str, bytes]:
    with open(path, "rb") as f:
        data = f.read()
    header = parse_header(data)
    if not header.kvd_length:
        return {}
    block = data[header.kvd_offset:header.kvd_offset + header.kvd_length]
    return dict(_parse_kvd(block))


def inject_key_value(path: str, key: str, value: bytes):
    """Add or replace one key/value entry and shift everything behind the KVD.

    Keys are kept in byte order as KTX2 requires. The file is rewritten
    atomically.
    """
    with open(path, "rb") as f:
        data = bytearray(f.read())
    header = parse_header(bytes(data))

    if header.kvd_length:
        kvd_start = header.kvd_offset
    else:
        kvd_start = header.dfd_offset + header.dfd_length
    kvd_end = kvd_start + header.kvd_length
    entries = _parse_kvd(bytes(data[kvd_start:kvd_end]))
    entries = [(k, v) for k, v in entries if k != key]
    entries.append((key, bytes(value)))
    entries.sort(key=lambda kv: kv[0].encode("utf-8"))
    new_kvd = _build_kvd(entries)

    growth = len(new_kvd) - header.kvd_length
    delta = -(-growth // _SHIFT_ALIGNMENT) * _SHIFT_ALIGNMENT if growth > 0 else 0
    filler = b"\x00" * (delta - growth) if delta else b""
    if growth < 0:
        # Shrinking keeps the old span; the spare bytes become padding.
        filler = b"\x00" * (-growth)
    out = bytearray(data[:kvd_start]) + new_kvd + filler + data[kvd_end:]

    struct.pack_into("<2I", out, _HEADER.size + 8, kvd_start, len(new_kvd))
    if header.sgd_length and header.sgd_offset >= kvd_end:
        struct.pack_into("<Q", out, _HEADER.size + 16, header.sgd_offset + delta)
    for i, (offset, length, uncompressed) in enumerate(header.levels):
        if offset >= kvd_end:
            offset += delta
        _LEVEL.pack_into(out, HEADER_SIZE + i * _LEVEL.size, offset, length, uncompressed)

    tmp_path = f"{path}.tmp.{os.getpid()}.{threading.get_ident()}"
    try:
        with open(tmp_path, "wb") as f:
            f.write(out)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass
    logger.debug("Injected %d byte(s) under '%s' into %s (shift %d)",
                 len(value), key, path, delta)
