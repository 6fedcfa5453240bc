"""Shared test fixtures."""

import json
import os
import shutil
import sys
import tempfile

import numpy as np
import pytest

from TextureBrew.config import PipelineConfig
from TextureBrew.core import save_image


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return PipelineConfig()


def save_test_png(path, width=64, height=64, channels=3, value=None):
    """Create a random (or constant, when ``value`` is given) test PNG image."""
    if value is None:
        arr = np.random.rand(height, width, channels).astype(np.float32)
    else:
        arr = np.full((height, width, channels), value, dtype=np.float32)
    save_image(arr, path)
    return arr


_FAKE_KTX = '''
import json
import struct
import sys

if "--version" in sys.argv:
    print("ktx version: v4.3.2-fake")
    sys.exit(0)
with open({log!r}, "a", encoding="utf-8") as log:
    log.write(json.dumps(sys.argv[1:]) + "\\n")
if {exit_code}:
    sys.stderr.write("fake encoder failure\\n")
    sys.exit({exit_code})
identifier = bytes([0xAB, 0x4B, 0x54, 0x58, 0x20, 0x32, 0x30, 0xBB, 0x0D, 0x0A, 0x1A, 0x0A])
data = b"\\xAA" * 16
body = struct.pack("<12s9I", identifier, 37, 1, 4, 4, 0, 0, 1, 1, 0)
body += struct.pack("<4I2Q", 104, 4, 0, 0, 0, 0)
body += struct.pack("<3Q", 112, len(data), len(data))
body += struct.pack("<I", 4) + b"\\x00" * 4
with open(sys.argv[-1], "wb") as out:
    out.write(body + data)
'''


def write_fake_ktx(directory, exit_code=0):
    """Write a stand-in for ``ktx`` that logs its argv and emits a tiny KTX2.

    Returns ``(command_prefix, log_path)``; each line of the log is the JSON
    argument list of one invocation.
    """
    script = os.path.join(directory, "fake_ktx.py")
    log_path = os.path.join(directory, "fake_ktx_calls.jsonl")
    with open(script, "w", encoding="utf-8") as f:
        f.write(_FAKE_KTX.format(log=log_path, exit_code=int(exit_code)))
    return [sys.executable, script], log_path


def read_fake_ktx_calls(log_path):
    if not os.path.exists(log_path):
        return []
    with open(log_path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
