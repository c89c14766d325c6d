from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

import batch_encryptor as be


def create_file(directory: Path, name: str, data: bytes = b"") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(data)
    return path


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@pytest.fixture
def key() -> bytes:
    return os.urandom(be.KEY_LEN)


@pytest.fixture
def pipeline(key: bytes) -> be.EncryptionPipeline:
    return be.EncryptionPipeline(key, chunk_size=be.MIN_CHUNK_SIZE)
