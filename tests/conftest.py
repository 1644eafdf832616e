"""tests/conftest.py — Shared fixtures for the cloudbackup-prepare test suite."""
import base64
import random
import sys
import zlib
from pathlib import Path

import pytest
import snappy
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

REPO_ROOT = Path(__file__).resolve().parent.parent

# Add api/ and tools/ to sys.path for module imports
for _sub in ("api", "tools"):
    _dir = str(REPO_ROOT / _sub)
    if _dir not in sys.path:
        sys.path.insert(0, _dir)

# Key used by the agent's own regression suite (32 bytes, base64url with '_').
AGENT_TEST_KEY = "kpySdc2vfHL_4WebUstA29fRFacKis8LZRbLqFFY0HM="


def b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def ofb(key: str, data: bytes) -> bytes:
    """Agent-side encryption: AES-OFB, zero IV."""
    raw = base64.urlsafe_b64decode(key)
    return Cipher(algorithms.AES(raw), modes.OFB(bytes(16))).encryptor().update(data)


def deflate(data: bytes) -> bytes:
    return zlib.compress(data, 6)


def snappy_framed(data: bytes) -> bytes:
    return snappy.StreamCompressor().add_chunk(data)


def snappy_chunk_offsets(blob: bytes) -> list:
    """Start offset of every chunk after the stream identifier."""
    offsets = []
    pos = 10
    while pos < len(blob):
        offsets.append(pos)
        pos += 4 + int.from_bytes(blob[pos + 1:pos + 4], "little")
    return offsets


@pytest.fixture
def plaintext():
    """~300 KiB of mysqldump-looking text with some noise, deterministic."""
    rng = random.Random(1729)
    rows = []
    for i in range(6000):
        rows.append(
            f"INSERT INTO `orders` VALUES ({i},'cust-{rng.randint(1, 999):03d}',"
            f"{rng.random():.6f},'{rng.choice(['new', 'paid', 'shipped'])}');\n"
        )
    return "".join(rows).encode("utf-8") + bytes(rng.getrandbits(8) for _ in range(4096))


@pytest.fixture
def key():
    return AGENT_TEST_KEY


@pytest.fixture
def other_key():
    return b64url(bytes(range(32)))


@pytest.fixture
def legacy_artifact(plaintext, key):
    """Agent <= 1.2.0: zlib container, then encrypted."""
    return ofb(key, deflate(plaintext))


@pytest.fixture
def snappy_artifact(plaintext, key):
    """Agent 1.2.x..1.10.0 and flagged newer agents: framed snappy, then encrypted."""
    return ofb(key, snappy_framed(plaintext))
