#!/usr/bin/env python3
# batch_encryptor.py
#
# Resumable batch encryptor for file trees.
# Every input file NAME yields three sibling artifacts in its output directory:
#   NAME.md5      hex MD5 of the original bytes
#   NAME.gpg      encrypted stream (format v1)
#   NAME.gpg.md5  hex MD5 of the encrypted bytes
# An artifact that already exists is never overwritten and marks its stage as done.
#
# Stream format v1: authenticated header (HMAC-SHA256) + per-chunk AEAD (AES-256-GCM or ChaCha20-Poly1305).
#
# Dependencies: stdlib + cryptography

from __future__ import annotations

import argparse
import base64
import hashlib
import logging
import os
import secrets
import struct
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger("batch_encryptor")


# =========================
# Constants / Limits
# =========================

MAGIC = b"ENCS"
VERSION = 1

KEYFILE_MAGIC_LINE = "ENCRKEYv1"
KEY_LEN = 32
MASTER_SEED_LEN = 64
SALT_LEN = 16
HMAC_LEN = 32
TAG_LEN = 16
NONCE_PREFIX_LEN = 8
COUNTER_MAX = 0xFFFFFFFF

DEFAULT_CIPHER = "aesgcm"
DEFAULT_CHUNK_SIZE = 1_048_576
MIN_CHUNK_SIZE = 4096
MAX_CHUNK_SIZE = 16_777_216

HKDF_INFO = b"ENCSv1"

DIGEST_SUFFIX = ".md5"
ENCRYPTED_SUFFIX = ".gpg"

# Never picked up by discovery, so artifacts of earlier runs are not re-encrypted.
DENIED_EXTENSIONS = (".md5", ".gpg", ".jar")

NO_FILES_TO_PROCESS = (
    "The list of files-to-be-processed is empty. "
    "Please see the messages above to find out why your input-files were skipped."
)


# =========================
# Enums / Data
# =========================

class CipherId(IntEnum):
    AESGCM = 1
    CHACHA20POLY1305 = 2

    @staticmethod
    def from_cli(name: str) -> "CipherId":
        n = name.lower()
        if n == "aesgcm":
            return CipherId.AESGCM
        if n == "chacha20poly1305":
            return CipherId.CHACHA20POLY1305
        raise ValueError(f"Unsupported cipher: {name}")


class RecordType(IntEnum):
    CHUNK = 1
    FINAL = 2


class OutcomeStatus(Enum):
    SKIPPED = "skipped"
    PROCESSED = "processed"
    FAILED = "failed"


class ResourceMode(Enum):
    SEQUENTIAL = "sequential"
    HALF = "half"
    OPTIMIZE = "optimize"
    FULL = "full"
    USER = "user"


@dataclass(frozen=True)
class WorkItem:
    source_path: Path
    output_dir: Path

    @classmethod
    def beside(cls, source_path: Path) -> "WorkItem":
        return cls(source_path, source_path.parent)

    def artifact_path(self, suffix: str) -> Path:
        return self.output_dir / (self.source_path.name + suffix)


@dataclass(frozen=True)
class ArtifactStatus:
    plain_digest: Path
    encrypted: Path
    encrypted_digest: Path

    has_plain_digest: bool
    has_encrypted: bool
    has_encrypted_digest: bool

    @classmethod
    def of(cls, item: WorkItem) -> "ArtifactStatus":
        plain_digest = item.artifact_path(DIGEST_SUFFIX)
        encrypted = item.artifact_path(ENCRYPTED_SUFFIX)
        encrypted_digest = item.artifact_path(ENCRYPTED_SUFFIX + DIGEST_SUFFIX)
        return cls(
            plain_digest=plain_digest,
            encrypted=encrypted,
            encrypted_digest=encrypted_digest,
            has_plain_digest=plain_digest.exists(),
            has_encrypted=encrypted.exists(),
            has_encrypted_digest=encrypted_digest.exists(),
        )

    @property
    def complete(self) -> bool:
        return self.has_plain_digest and self.has_encrypted and self.has_encrypted_digest


@dataclass(frozen=True)
class Outcome:
    item: WorkItem
    status: OutcomeStatus
    produced: Tuple[Path, ...] = ()
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class Header:
    version: int
    cipher_id: CipherId
    salt: bytes
    nonce_prefix: bytes
    chunk_size: int

    header_without_hmac: bytes
    header_hash: bytes  # SHA256(header_without_hmac)
    stored_hmac: bytes


# =========================
# Errors
# =========================

class EncryptorError(Exception):
    pass


class FormatError(EncryptorError):
    pass


class SecretError(EncryptorError):
    pass


class OutputDirectoryError(EncryptorError):
    pass


class ProcessingError(EncryptorError):
    def __init__(self, item: WorkItem, cause: BaseException) -> None:
        super().__init__(f"Error while processing {item.source_path}: {cause}")
        self.item = item
        self.cause = cause


# =========================
# Helpers
# =========================

def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


def read_exact(f: BinaryIO, n: int) -> bytes:
    if n < 0:
        raise FormatError("Invalid read size.")
    buf = bytearray()
    while len(buf) < n:
        chunk = f.read(n - len(buf))
        if not chunk:
            raise FormatError("Unexpected EOF while reading encrypted stream.")
        buf += chunk
    return bytes(buf)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def compare_digest(a: bytes, b: bytes) -> bool:
    return secrets.compare_digest(a, b)


def copy_stream(source: BinaryIO, sink, buffer_size: int) -> int:
    total = 0
    while True:
        block = source.read(buffer_size)
        if not block:
            return total
        sink.write(block)
        total += len(block)


def _ensure_chunk_size_ok(chunk_size: int) -> None:
    if not (MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE):
        raise EncryptorError(
            f"--chunk-size must be in [{MIN_CHUNK_SIZE} .. {MAX_CHUNK_SIZE}], got {chunk_size}"
        )


def _fsync_fileobj_best_effort(f: BinaryIO) -> None:
    try:
        f.flush()
    except Exception:
        return
    try:
        os.fsync(f.fileno())
    except Exception:
        pass


def _unlink_best_effort(p: Path) -> None:
    try:
        p.unlink()
    except FileNotFoundError:
        pass
    except Exception:
        pass


def _posix_open_flags_no_follow() -> int:
    return getattr(os, "O_NOFOLLOW", 0)


def _secure_open_exclusive(path: Path, *, mode: int = 0o600) -> int:
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if os.name == "posix":
        flags |= _posix_open_flags_no_follow()
    return os.open(str(path), flags, mode)


def _open_new_file(path: Path, *, mode: int = 0o644) -> BinaryIO:
    fd = _secure_open_exclusive(path, mode=mode)
    try:
        return os.fdopen(fd, "wb", closefd=True)
    except Exception:
        os.close(fd)
        raise


def _chmod_600_if_possible(path: Path) -> None:
    try:
        if os.name == "posix":
            os.chmod(path, 0o600)
    except Exception:
        pass


# =========================
# Keyfile handling
# =========================

def read_keyfile(path: Path) -> bytes:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as ex:
        raise SecretError(f"Keyfile not found: {path}") from ex
    except OSError as ex:
        raise SecretError(f"Failed to read keyfile: {path} ({ex})") from ex

    lines = raw.splitlines()
    non_empty = [ln.strip() for ln in lines if ln.strip() != ""]
    if len(non_empty) != 2:
        raise SecretError("Invalid keyfile format: expected exactly 2 non-empty lines.")
    if non_empty[0] != KEYFILE_MAGIC_LINE:
        raise SecretError("Invalid keyfile: bad magic line.")
    try:
        key = base64.b64decode(non_empty[1], validate=True)
    except Exception as ex:
        raise SecretError("Invalid keyfile: base64 decode failed.") from ex
    if len(key) != KEY_LEN:
        raise SecretError("Invalid keyfile: expected 32 bytes key after base64 decode.")
    return key


def write_keyfile(path: Path, key: bytes) -> None:
    if len(key) != KEY_LEN:
        raise ValueError("Internal: key length must be 32 bytes.")
    content = f"{KEYFILE_MAGIC_LINE}\n{base64.b64encode(key).decode('ascii')}\n".encode("utf-8")

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        f = _open_new_file(path, mode=0o600 if os.name == "posix" else 0o666)
    except FileExistsError as ex:
        raise SecretError(f"Keyfile already exists and overwriting is forbidden: {path}") from ex
    except OSError as ex:
        raise SecretError(f"Failed to create keyfile: {path} ({ex})") from ex

    try:
        with f:
            f.write(content)
            _fsync_fileobj_best_effort(f)
    except OSError as ex:
        _unlink_best_effort(path)
        raise SecretError(f"Failed to write keyfile: {path} ({ex})") from ex

    _chmod_600_if_possible(path)


def ensure_keyfile(path: Path, create: bool = False) -> bytes:
    if path.exists() or not create:
        return read_keyfile(path)

    key = os.urandom(KEY_LEN)
    write_keyfile(path, key)
    logger.info("Created new keyfile %s", path)
    return key


# =========================
# Keys / MAC / AEAD
# =========================

def hkdf_derive(ikm: bytes, salt: bytes, length: int) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=HKDF_INFO,
    )
    return hkdf.derive(ikm)


def derive_stream_keys(key: bytes, salt: bytes) -> Tuple[bytes, bytes]:
    if len(key) != KEY_LEN:
        raise SecretError(f"Key must be {KEY_LEN} bytes, got {len(key)}.")
    if len(salt) != SALT_LEN:
        raise SecretError("Internal: salt length mismatch.")
    master_seed = hkdf_derive(key, salt=salt, length=MASTER_SEED_LEN)
    return master_seed[:32], master_seed[32:]


def compute_header_hmac(mac_key: bytes, header_without_hmac: bytes) -> bytes:
    h = hmac.HMAC(mac_key, hashes.SHA256())
    h.update(header_without_hmac)
    return h.finalize()


def make_nonce(prefix8: bytes, counter: int) -> bytes:
    if len(prefix8) != NONCE_PREFIX_LEN:
        raise EncryptorError("Internal: nonce prefix must be 8 bytes.")
    if not (0 <= counter <= COUNTER_MAX):
        raise EncryptorError("Chunk counter overflow.")
    return prefix8 + struct.pack(">I", counter)  # counter big-endian


def build_aad(header_hash: bytes, chunk_index: int, record_type: RecordType) -> bytes:
    return header_hash + struct.pack("<IB", chunk_index, int(record_type))


def get_aead(cipher_id: CipherId, enc_key: bytes):
    if len(enc_key) != 32:
        raise EncryptorError("Internal: enc_key must be 32 bytes.")
    if cipher_id == CipherId.AESGCM:
        return AESGCM(enc_key)
    if cipher_id == CipherId.CHACHA20POLY1305:
        return ChaCha20Poly1305(enc_key)
    raise EncryptorError("Unsupported cipher.")


# =========================
# Header encode/decode
# =========================

def build_header_without_hmac(
    cipher_id: CipherId,
    salt: bytes,
    nonce_prefix: bytes,
    chunk_size: int,
) -> bytes:
    if len(salt) != SALT_LEN:
        raise EncryptorError("Internal: salt must be 16 bytes for v1.")
    if len(nonce_prefix) != NONCE_PREFIX_LEN:
        raise EncryptorError("Internal: nonce prefix must be 8 bytes.")
    _ensure_chunk_size_ok(chunk_size)

    parts = []
    parts.append(struct.pack("<4sHBH", MAGIC, VERSION, int(cipher_id), len(salt)))
    parts.append(salt)
    parts.append(nonce_prefix)
    parts.append(struct.pack("<I", chunk_size))
    return b"".join(parts)


def write_header(f, header_without_hmac: bytes, header_hmac: bytes) -> None:
    if len(header_hmac) != HMAC_LEN:
        raise EncryptorError("Internal: header HMAC must be 32 bytes.")
    f.write(header_without_hmac)
    f.write(struct.pack("<H", len(header_hmac)))
    f.write(header_hmac)


def read_header(f: BinaryIO) -> Header:
    fixed = read_exact(f, 4 + 2 + 1 + 2)
    magic, ver, cipher_id_u8, salt_len = struct.unpack("<4sHBH", fixed)

    if magic != MAGIC:
        raise FormatError("Not an ENCS stream (bad magic).")
    if ver != VERSION:
        raise FormatError(f"Unsupported stream version: {ver}")
    try:
        cipher_id = CipherId(cipher_id_u8)
    except ValueError as ex:
        raise FormatError(f"Unsupported cipher_id in stream: {cipher_id_u8}") from ex
    if salt_len != SALT_LEN:
        raise FormatError(f"Unsupported salt length for v1: {salt_len}")

    salt = read_exact(f, salt_len)
    nonce_prefix = read_exact(f, NONCE_PREFIX_LEN)
    raw_chunk = read_exact(f, 4)
    (chunk_size,) = struct.unpack("<I", raw_chunk)
    if not (MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE):
        raise FormatError(f"Unreasonable chunk_size in header: {chunk_size}")

    header_without_hmac = fixed + salt + nonce_prefix + raw_chunk

    (hlen,) = struct.unpack("<H", read_exact(f, 2))
    if hlen != HMAC_LEN:
        raise FormatError(f"Unsupported header_hmac_len: {hlen} (expected {HMAC_LEN})")
    stored_hmac = read_exact(f, hlen)

    return Header(
        version=ver,
        cipher_id=cipher_id,
        salt=salt,
        nonce_prefix=nonce_prefix,
        chunk_size=chunk_size,
        header_without_hmac=header_without_hmac,
        header_hash=sha256(header_without_hmac),
        stored_hmac=stored_hmac,
    )


# =========================
# Stream wrappers
# =========================

class _Digesting:
    def __init__(self) -> None:
        self._hash = hashes.Hash(hashes.MD5())
        self._hexdigest: Optional[str] = None

    def _update(self, data) -> None:
        if self._hexdigest is not None:
            raise EncryptorError("Digest already finalized; no further bytes can be accumulated.")
        self._hash.update(bytes(data))

    def finalize_digest(self) -> str:
        """Return the hex digest of every byte seen so far. Callable once."""
        if self._hexdigest is not None:
            raise EncryptorError("Digest can only be finalized once.")
        self._hexdigest = self._hash.finalize().hex()
        return self._hexdigest


class DigestingWriter(_Digesting):
    """Byte sink accumulating a digest, optionally forwarding everything to ``sink``."""

    def __init__(self, sink=None) -> None:
        super().__init__()
        self._sink = sink

    def write(self, data) -> int:
        self._update(data)
        if self._sink is not None:
            self._sink.write(data)
        return len(data)

    def flush(self) -> None:
        if self._sink is not None:
            self._sink.flush()


class DigestingReader(_Digesting):
    def __init__(self, source: BinaryIO) -> None:
        super().__init__()
        self._source = source

    def read(self, n: int = -1) -> bytes:
        data = self._source.read(n)
        if data:
            self._update(data)
        return data


class TeeWriter:
    def __init__(self, sinks: Sequence) -> None:
        self._sinks = list(sinks)

    def write(self, data) -> int:
        for sink in self._sinks:
            sink.write(data)
        return len(data)


class EncryptingWriter:
    """
    Byte sink encrypting everything written through it into ``sink``.

    The authenticated header goes out on construction; plaintext is buffered and
    sealed chunk by chunk. close() seals the FINAL record and flushes ``sink``;
    ``sink`` itself is only closed when ``close_sink`` is set. Leaving a ``with``
    block on an exception does not seal, so a broken stream never looks complete.
    """

    def __init__(
        self,
        sink,
        key: bytes,
        cipher_id: CipherId = CipherId.AESGCM,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        close_sink: bool = False,
    ) -> None:
        _ensure_chunk_size_ok(chunk_size)
        salt = os.urandom(SALT_LEN)
        nonce_prefix = os.urandom(NONCE_PREFIX_LEN)
        enc_key, mac_key = derive_stream_keys(key, salt)

        header_wo = build_header_without_hmac(cipher_id, salt, nonce_prefix, chunk_size)
        write_header(sink, header_wo, compute_header_hmac(mac_key, header_wo))

        self._sink = sink
        self._close_sink = close_sink
        self._chunk_size = chunk_size
        self._aead = get_aead(cipher_id, enc_key)
        self._nonce_prefix = nonce_prefix
        self._header_hash = sha256(header_wo)
        self._buffer = bytearray()
        self._chunk_index = 0
        self._closed = False

    def write(self, data) -> int:
        if self._closed:
            raise ValueError("write to closed EncryptingWriter")
        self._buffer += data
        # Keep at least one byte back so the FINAL record carries data for non-empty input.
        while len(self._buffer) > self._chunk_size:
            plain = bytes(self._buffer[: self._chunk_size])
            del self._buffer[: self._chunk_size]
            self._seal(RecordType.CHUNK, plain)
        return len(data)

    def _seal(self, record_type: RecordType, plain: bytes) -> None:
        nonce = make_nonce(self._nonce_prefix, self._chunk_index)
        aad = build_aad(self._header_hash, self._chunk_index, record_type)
        ct = self._aead.encrypt(nonce, plain, aad)
        if len(ct) != len(plain) + TAG_LEN:
            raise EncryptorError("Internal: unexpected AEAD ciphertext length.")
        self._sink.write(struct.pack("<BI", int(record_type), len(ct)))
        self._sink.write(ct)
        self._chunk_index += 1

    def flush(self) -> None:
        self._sink.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._seal(RecordType.FINAL, bytes(self._buffer))
        self._buffer.clear()
        self._closed = True
        self.flush()
        if self._close_sink:
            self._sink.close()

    def __enter__(self) -> "EncryptingWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        elif self._close_sink:
            self._sink.close()


def decrypt_stream(source: BinaryIO, sink, key: bytes) -> int:
    header = read_header(source)
    enc_key, mac_key = derive_stream_keys(key, header.salt)

    expected_hmac = compute_header_hmac(mac_key, header.header_without_hmac)
    if not compare_digest(expected_hmac, header.stored_hmac):
        raise SecretError("Header HMAC mismatch: wrong key or corrupted stream.")

    aead = get_aead(header.cipher_id, enc_key)
    chunk_index = 0
    total = 0

    while True:
        rec = source.read(5)
        if len(rec) != 5:
            raise FormatError("Truncated stream: missing FINAL record.")
        rt, cipher_len = struct.unpack("<BI", rec)
        try:
            record_type = RecordType(rt)
        except ValueError as ex:
            raise FormatError(f"Unexpected record_type: {rt}") from ex

        if cipher_len < TAG_LEN or cipher_len > header.chunk_size + TAG_LEN:
            raise FormatError(f"Invalid cipher_len for chunk {chunk_index}: {cipher_len}")
        if record_type == RecordType.CHUNK and cipher_len != header.chunk_size + TAG_LEN:
            raise FormatError(f"Short non-final chunk {chunk_index}.")

        ciphertext = read_exact(source, cipher_len)
        nonce = make_nonce(header.nonce_prefix, chunk_index)
        aad = build_aad(header.header_hash, chunk_index, record_type)
        try:
            plaintext = aead.decrypt(nonce, ciphertext, aad)
        except InvalidTag as ex:
            raise SecretError(
                f"InvalidTag while decrypting chunk {chunk_index}: wrong key or corrupted stream."
            ) from ex

        sink.write(plaintext)
        total += len(plaintext)
        chunk_index += 1

        if record_type == RecordType.FINAL:
            break

    if source.read(1) != b"":
        raise FormatError("Trailing data after FINAL record.")
    return total


def decrypt_file(encrypted_path: Path, out_path: Path, key: bytes) -> int:
    try:
        src = open(encrypted_path, "rb")
    except OSError as ex:
        raise EncryptorError(f"Failed to open encrypted file: {encrypted_path} ({ex})") from ex

    with src:
        try:
            out_f = _open_new_file(out_path)
        except FileExistsError as ex:
            raise EncryptorError(f"Refusing to overwrite existing file: {out_path}") from ex
        except OSError as ex:
            raise EncryptorError(f"Failed to create output file: {out_path} ({ex})") from ex

        try:
            with out_f:
                total = decrypt_stream(src, out_f, key)
                _fsync_fileobj_best_effort(out_f)
        except OSError as ex:
            _unlink_best_effort(out_path)
            raise EncryptorError(f"I/O error while decrypting {encrypted_path} to {out_path}: {ex}") from ex
        except Exception:
            _unlink_best_effort(out_path)
            raise
    return total


# =========================
# Encryption pipeline
# =========================

class Pipeline(Protocol):
    def process(self, item: WorkItem) -> Outcome:
        ...


def _ensure_output_dir(item: WorkItem) -> None:
    try:
        item.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as ex:
        cause = OutputDirectoryError(
            f'The "{item.output_dir}" directory does not exist and it was not possible to create it, '
            f"or one of its parent directories."
        )
        cause.__cause__ = ex
        raise ProcessingError(item, cause) from cause


def _write_digest_file(path: Path, hexdigest: str) -> None:
    with _open_new_file(path) as f:
        f.write(hexdigest.encode("ascii"))


class EncryptionPipeline:
    """
    Produces the missing artifacts of one work item in a single read of the source.

    Bytes read from the source are fanned out to a plaintext digest and to the
    encryption stream, whose output is itself digested on its way into NAME.gpg.
    Each stage is skipped when its artifact already exists. Partially written
    artifacts of a failed attempt stay on disk and count as done on the next run.
    """

    def __init__(
        self,
        key: bytes,
        cipher_id: CipherId = CipherId.AESGCM,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if len(key) != KEY_LEN:
            raise SecretError(f"Key must be {KEY_LEN} bytes, got {len(key)}.")
        _ensure_chunk_size_ok(chunk_size)
        self._key = key
        self._cipher_id = cipher_id
        self._chunk_size = chunk_size

    def process(self, item: WorkItem) -> Outcome:
        _ensure_output_dir(item)

        try:
            status = ArtifactStatus.of(item)
            if status.complete:
                logger.debug("All artifacts of %s already exist, skipping.", item.source_path)
                return Outcome(item, OutcomeStatus.SKIPPED)
            produced = self._produce(item, status)
        except (OSError, EncryptorError) as ex:
            raise ProcessingError(item, ex) from ex

        logger.info("Processed %s -> %s", item.source_path, ", ".join(p.name for p in produced))
        return Outcome(item, OutcomeStatus.PROCESSED, produced=tuple(produced))

    def _produce(self, item: WorkItem, status: ArtifactStatus) -> List[Path]:
        produced: List[Path] = []
        with ExitStack() as stack:
            source: Optional[BinaryIO] = None
            if not (status.has_plain_digest and status.has_encrypted):
                # Opened before any artifact exists: an unreadable source must not leave a marker.
                source = stack.enter_context(open(item.source_path, "rb"))

            sinks = []
            plain_digest: Optional[DigestingWriter] = None
            cipher_digest = None
            encrypting: Optional[EncryptingWriter] = None
            encrypted_f: Optional[BinaryIO] = None

            if status.has_plain_digest:
                logger.debug("%s exists, skipping plaintext digest.", status.plain_digest)
            else:
                plain_digest = DigestingWriter()
                sinks.append(plain_digest)

            if status.has_encrypted:
                logger.debug("%s exists, skipping encryption.", status.encrypted)
            else:
                encrypted_f = stack.enter_context(_open_new_file(status.encrypted))
                produced.append(status.encrypted)
                target = encrypted_f
                if not status.has_encrypted_digest:
                    cipher_digest = DigestingWriter(encrypted_f)
                    target = cipher_digest
                encrypting = EncryptingWriter(
                    target, self._key, cipher_id=self._cipher_id, chunk_size=self._chunk_size
                )
                sinks.append(encrypting)

            if source is not None:
                copy_stream(source, TeeWriter(sinks), self._chunk_size)

            if encrypting is not None:
                encrypting.close()
                _fsync_fileobj_best_effort(encrypted_f)

            if status.has_encrypted_digest:
                logger.debug("%s exists, skipping encrypted digest.", status.encrypted_digest)
            elif cipher_digest is None:
                # NAME.gpg is from an earlier run; digest the bytes as they are on disk.
                cipher_digest = DigestingReader(stack.enter_context(open(status.encrypted, "rb")))
                while cipher_digest.read(self._chunk_size):
                    pass

            if plain_digest is not None:
                _write_digest_file(status.plain_digest, plain_digest.finalize_digest())
                produced.append(status.plain_digest)
            if cipher_digest is not None:
                _write_digest_file(status.encrypted_digest, cipher_digest.finalize_digest())
                produced.append(status.encrypted_digest)
        return produced


# =========================
# Task executor
# =========================

def effective_worker_count(item_count: int, requested: int) -> int:
    return max(1, min(requested, item_count))


def summarize(outcomes: Iterable[Outcome]) -> Dict[OutcomeStatus, int]:
    counts = {status: 0 for status in OutcomeStatus}
    for outcome in outcomes:
        counts[outcome.status] += 1
    return counts


class TaskExecutor:
    """
    Drives a pipeline over a batch of work items, sequentially or on a thread pool.

    A failing item is logged and recorded as FAILED; it never stops the rest of the
    batch. execute() blocks until every item has been attempted and returns the
    outcomes in input order.
    """

    def __init__(self, pipeline: Pipeline, thread_name_prefix: str = "encryptor-worker") -> None:
        self._pipeline = pipeline
        self._thread_name_prefix = thread_name_prefix

    def execute(self, items: Sequence[WorkItem], worker_count: Optional[int] = None) -> List[Outcome]:
        if not items:
            logger.warning(NO_FILES_TO_PROCESS)
            return []
        if worker_count is None:
            return self._execute_sequential(items)
        return self._execute_parallel(items, worker_count)

    def _execute_sequential(self, items: Sequence[WorkItem]) -> List[Outcome]:
        logger.debug("Sequential task executor is running, %d file(s) to process", len(items))
        outcomes: List[Outcome] = []
        for item in items:
            try:
                outcomes.append(self._pipeline.process(item))
            except Exception as ex:
                outcomes.append(self._failed(item, ex))
        return outcomes

    def _execute_parallel(self, items: Sequence[WorkItem], worker_count: int) -> List[Outcome]:
        workers = effective_worker_count(len(items), worker_count)
        logger.info("Based on the number of file(s), %d thread(s) will process the file(s)", workers)

        results: Dict[int, Outcome] = {}
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self._thread_name_prefix)
        interrupted = True
        try:
            future_to_index = {}
            for index, item in enumerate(items):
                future_to_index[pool.submit(self._pipeline.process, item)] = index

            for future in as_completed(future_to_index):
                index = future_to_index[future]
                try:
                    results[index] = future.result()
                except Exception as ex:
                    results[index] = self._failed(items[index], ex)
            interrupted = False
        finally:
            if interrupted:
                logger.error("Interrupted while waiting for results; cancelling pending files.")
            pool.shutdown(wait=True, cancel_futures=interrupted)

        return [results[index] for index in range(len(items))]

    @staticmethod
    def _failed(item: WorkItem, ex: Exception) -> Outcome:
        logger.error("Failed to process %s: %s", item.source_path, ex, exc_info=ex)
        return Outcome(item, OutcomeStatus.FAILED, error=ex)


# =========================
# File discovery
# =========================

def _is_valid_file(path: Path) -> bool:
    if not path.is_file():
        return False
    if path.name.startswith("."):
        logger.warning("The %s file is skipped because it is hidden.", path)
        return False
    if path.name.lower().endswith(DENIED_EXTENSIONS):
        logger.warning(
            "The %s file is skipped because its extension is in the list of not allowed extensions: %s",
            path,
            ", ".join(DENIED_EXTENSIONS),
        )
        return False
    return True


def _iter_files(root: Path) -> Iterable[Path]:
    if not root.is_dir():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _output_dir_for(root: Path, file_path: Path, output_root: Optional[Path]) -> Path:
    if output_root is None:
        return file_path.parent
    if file_path == root:
        return output_root
    return output_root / file_path.parent.relative_to(root)


def discover_files(roots: Sequence[Path], output_root: Optional[Path] = None) -> List[WorkItem]:
    """
    Resolve input roots (files and/or directories) into work items.

    Without ``output_root`` every artifact lands next to its source; with it, the
    directory layout below each root is mirrored under ``output_root``.
    """
    out = Path(os.path.abspath(output_root)) if output_root is not None else None
    items: List[WorkItem] = []
    for raw_root in roots:
        root = Path(os.path.abspath(Path(raw_root).expanduser()))
        if not root.exists():
            logger.error("Input path not found, skipping: %s", raw_root)
            continue
        for path in _iter_files(root):
            if _is_valid_file(path):
                items.append(WorkItem(path, _output_dir_for(root, path, out)))
    return items


# =========================
# Worker-count policy
# =========================

def determine_worker_count(mode: ResourceMode, cpu_count: int, user_threads: Optional[int] = None) -> int:
    if cpu_count <= 1:
        logger.info("Single processor detected. File(s) will be processed sequentially.")
        return 1
    if mode == ResourceMode.HALF:
        return max(1, cpu_count // 2)
    if mode == ResourceMode.OPTIMIZE:
        return max(1, int(cpu_count * 0.75))
    if mode == ResourceMode.FULL:
        return cpu_count - 1
    if mode == ResourceMode.USER:
        if user_threads is None:
            raise EncryptorError("User resource mode requires a thread count.")
        if user_threads >= cpu_count:
            logger.warning(
                "The requested number of threads is greater than or equal to the number of available cores. "
                "Using %d thread(s).",
                cpu_count - 1,
            )
            return cpu_count - 1
        if user_threads <= 0:
            logger.warning("The requested number of threads is less than or equal to zero. Using a single thread.")
            return 1
        return user_threads
    return 1


# =========================
# CLI
# =========================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="batch-encryptor",
        description=(
            "Encrypt files and folders file by file. For every input file NAME the output directory\n"
            "receives NAME.md5, NAME.gpg and NAME.gpg.md5. Existing artifacts are never overwritten,\n"
            "so an interrupted batch can simply be run again."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    g = p.add_mutually_exclusive_group()
    g.add_argument("--encrypt", action="store_true", help="Encrypt (default).")
    g.add_argument("--decrypt", action="store_true", help="Decrypt the listed .gpg files.")

    p.add_argument(
        "-f",
        "--files",
        required=True,
        help="Comma-separated input paths. Encrypt: files and/or directories. Decrypt: .gpg files.",
    )
    p.add_argument(
        "-o",
        "--out",
        default=None,
        help=(
            "Output directory (default: alongside each input file).\n"
            "Encrypt: the layout below each input directory is mirrored here."
        ),
    )
    p.add_argument("--keyfile", required=True, help="Path to keyfile.")
    p.add_argument(
        "--create-keyfile",
        action="store_true",
        help="Encrypt-only: generate a new keyfile if --keyfile does not exist yet.",
    )
    p.add_argument(
        "--cipher",
        choices=["aesgcm", "chacha20poly1305"],
        default=DEFAULT_CIPHER,
        help=f"Encrypt-only: AEAD cipher (default {DEFAULT_CIPHER}).",
    )
    p.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help=f"Encrypt-only: chunk size in bytes (default {DEFAULT_CHUNK_SIZE}). Range [{MIN_CHUNK_SIZE}..{MAX_CHUNK_SIZE}].",
    )

    r = p.add_mutually_exclusive_group()
    r.add_argument("--half", action="store_true", help="Use half of the available cores.")
    r.add_argument("--optimize", action="store_true", help="Use ~75%% of the available cores.")
    r.add_argument("--full", action="store_true", help="Use all cores but one.")
    r.add_argument("--threads", type=int, default=None, help="Use this many threads (clamped to the core count).")

    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")
    return p


def configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(message)s",
    )


def resource_mode_from_args(args: argparse.Namespace) -> ResourceMode:
    if args.half:
        return ResourceMode.HALF
    if args.optimize:
        return ResourceMode.OPTIMIZE
    if args.full:
        return ResourceMode.FULL
    if args.threads is not None:
        return ResourceMode.USER
    return ResourceMode.SEQUENTIAL


def _split_paths(raw: str) -> List[Path]:
    return [Path(part.strip()) for part in raw.split(",") if part.strip()]


def _decrypt_files(files: Sequence[Path], out: Optional[Path], key: bytes) -> int:
    failed = 0
    for enc_path in files:
        if not enc_path.name.endswith(ENCRYPTED_SUFFIX):
            logger.error("Not a %s file, skipping: %s", ENCRYPTED_SUFFIX, enc_path)
            failed += 1
            continue
        target_dir = out if out is not None else enc_path.parent
        target = target_dir / enc_path.name[: -len(ENCRYPTED_SUFFIX)]
        try:
            decrypt_file(enc_path, target, key)
        except EncryptorError as ex:
            logger.error("Failed to decrypt %s: %s", enc_path, ex)
            failed += 1
            continue
        logger.info("Decrypted %s -> %s", enc_path, target)
    return 0 if failed == 0 else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    files = _split_paths(args.files)
    if not files:
        raise EncryptorError("--files must name at least one path.")
    out = Path(os.path.abspath(args.out)) if args.out else None
    if out is not None:
        try:
            out.mkdir(parents=True, exist_ok=True)
        except OSError as ex:
            raise EncryptorError(
                f'Output directory path "{out}" does not exist and it was not possible to create it either.'
            ) from ex

    if args.decrypt:
        if args.create_keyfile:
            raise EncryptorError("--create-keyfile is encrypt-only.")
        return _decrypt_files(files, out, read_keyfile(Path(args.keyfile)))

    _ensure_chunk_size_ok(args.chunk_size)
    key = ensure_keyfile(Path(args.keyfile), create=bool(args.create_keyfile))

    mode = resource_mode_from_args(args)
    cpu_count = os.cpu_count() or 1
    logger.info("The application has detected %d cores/processors.", cpu_count)
    worker_count = determine_worker_count(mode, cpu_count, args.threads)
    logger.info("Maximum %d thread(s) will be created to process the file(s)", worker_count)

    items = discover_files(files, out)
    pipeline = EncryptionPipeline(key, cipher_id=CipherId.from_cli(args.cipher), chunk_size=args.chunk_size)
    executor = TaskExecutor(pipeline)
    outcomes = executor.execute(items, None if worker_count <= 1 else worker_count)

    counts = summarize(outcomes)
    print(
        f"Done. processed: {counts[OutcomeStatus.PROCESSED]}, "
        f"skipped: {counts[OutcomeStatus.SKIPPED]}, failed: {counts[OutcomeStatus.FAILED]}"
    )
    return 0 if counts[OutcomeStatus.FAILED] == 0 else 1


def run() -> None:
    try:
        raise SystemExit(main())
    except EncryptorError as ex:
        eprint(f"Error: {ex}")
        raise SystemExit(2)
    except KeyboardInterrupt:
        eprint("Interrupted.")
        raise SystemExit(130)


if __name__ == "__main__":
    run()
