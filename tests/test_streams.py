from __future__ import annotations

import io
import os

import pytest

import batch_encryptor as be
from conftest import md5_hex


class _TrackingSink(io.BytesIO):
    def __init__(self) -> None:
        super().__init__()
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1


def _encrypt(data: bytes, key: bytes, **kwargs) -> bytes:
    sink = io.BytesIO()
    with be.EncryptingWriter(sink, key, chunk_size=be.MIN_CHUNK_SIZE, **kwargs) as w:
        w.write(data)
    return sink.getvalue()


def test_digesting_writer_forwards_and_digests():
    sink = io.BytesIO()
    w = be.DigestingWriter(sink)
    w.write(b"hel")
    w.write(b"lo")

    assert sink.getvalue() == b"hello"
    assert w.finalize_digest() == md5_hex(b"hello")


def test_digest_can_be_finalized_only_once():
    w = be.DigestingWriter()
    w.write(b"x")
    w.finalize_digest()

    with pytest.raises(be.EncryptorError):
        w.finalize_digest()
    with pytest.raises(be.EncryptorError):
        w.write(b"y")


def test_digesting_reader_digests_what_is_read():
    r = be.DigestingReader(io.BytesIO(b"hello world"))
    while r.read(3):
        pass

    assert r.finalize_digest() == md5_hex(b"hello world")


def test_tee_writer_fans_out():
    a, b = io.BytesIO(), io.BytesIO()
    be.TeeWriter([a, b]).write(b"abc")

    assert a.getvalue() == b.getvalue() == b"abc"


def test_encrypting_writer_leaves_sink_open_by_default(key):
    sink = _TrackingSink()
    w = be.EncryptingWriter(sink, key)
    w.write(b"data")
    w.close()

    assert sink.close_calls == 0
    w.close()
    with pytest.raises(ValueError):
        w.write(b"more")


def test_encrypting_writer_closes_sink_when_asked(key):
    sink = _TrackingSink()
    with be.EncryptingWriter(sink, key, close_sink=True) as w:
        w.write(b"data")

    assert sink.close_calls == 1


def test_exception_inside_with_block_does_not_seal(key):
    sink = io.BytesIO()
    with pytest.raises(RuntimeError):
        with be.EncryptingWriter(sink, key) as w:
            w.write(b"data")
            raise RuntimeError("boom")

    with pytest.raises(be.FormatError):
        be.decrypt_stream(io.BytesIO(sink.getvalue()), io.BytesIO(), key)


@pytest.mark.parametrize("cipher_id", list(be.CipherId))
def test_both_ciphers_round_trip(key, cipher_id):
    data = os.urandom(be.MIN_CHUNK_SIZE + 7)
    out = io.BytesIO()

    be.decrypt_stream(io.BytesIO(_encrypt(data, key, cipher_id=cipher_id)), out, key)

    assert out.getvalue() == data


def test_same_plaintext_encrypts_differently(key):
    assert _encrypt(b"hello", key) != _encrypt(b"hello", key)


def test_wrong_key_is_rejected(key):
    encrypted = _encrypt(b"hello", key)

    with pytest.raises(be.SecretError):
        be.decrypt_stream(io.BytesIO(encrypted), io.BytesIO(), os.urandom(be.KEY_LEN))


def test_truncated_stream_is_rejected(key):
    encrypted = _encrypt(os.urandom(be.MIN_CHUNK_SIZE * 2 + 1), key)
    # drop the FINAL record entirely
    truncated = encrypted[: -(1 + 4 + 1 + be.TAG_LEN)]

    with pytest.raises(be.FormatError):
        be.decrypt_stream(io.BytesIO(truncated), io.BytesIO(), key)


def test_tampered_chunk_is_rejected(key):
    encrypted = bytearray(_encrypt(b"hello", key))
    encrypted[-1] ^= 0x01

    with pytest.raises(be.SecretError):
        be.decrypt_stream(io.BytesIO(bytes(encrypted)), io.BytesIO(), key)


def test_trailing_data_is_rejected(key):
    with pytest.raises(be.FormatError):
        be.decrypt_stream(io.BytesIO(_encrypt(b"hello", key) + b"x"), io.BytesIO(), key)


def test_bad_magic_is_rejected(key):
    with pytest.raises(be.FormatError):
        be.decrypt_stream(io.BytesIO(b"NOPE" + b"\x00" * 64), io.BytesIO(), key)


def test_decrypt_file_refuses_to_overwrite(tmp_path, key):
    enc = tmp_path / "a.txt.gpg"
    enc.write_bytes(_encrypt(b"hello", key))
    target = tmp_path / "a.txt"
    target.write_bytes(b"keep me")

    with pytest.raises(be.EncryptorError):
        be.decrypt_file(enc, target, key)
    assert target.read_bytes() == b"keep me"


def test_decrypt_file_removes_partial_output(tmp_path, key):
    enc = tmp_path / "a.txt.gpg"
    enc.write_bytes(_encrypt(b"hello", key)[:-3])
    target = tmp_path / "a.txt"

    with pytest.raises(be.FormatError):
        be.decrypt_file(enc, target, key)
    assert not target.exists()


def test_keyfile_round_trip(tmp_path):
    path = tmp_path / "keys" / "k.key"
    created = be.ensure_keyfile(path, create=True)

    assert be.read_keyfile(path) == created
    assert be.ensure_keyfile(path, create=True) == created
    with pytest.raises(be.SecretError):
        be.write_keyfile(path, os.urandom(be.KEY_LEN))


def test_missing_keyfile_without_create(tmp_path):
    with pytest.raises(be.SecretError):
        be.ensure_keyfile(tmp_path / "nope.key")


def test_malformed_keyfile(tmp_path):
    path = tmp_path / "k.key"
    path.write_text("ENCRKEYv1\nnot base64!!\n")

    with pytest.raises(be.SecretError):
        be.read_keyfile(path)


def test_decrypt_file_wraps_write_errors(tmp_path, key, monkeypatch):
    enc = tmp_path / "a.txt.gpg"
    enc.write_bytes(_encrypt(b"hello", key))
    target = tmp_path / "a.txt"

    def failing_decrypt(source, sink, key):
        sink.write(b"he")
        raise OSError("disk full")

    monkeypatch.setattr(be, "decrypt_stream", failing_decrypt)

    with pytest.raises(be.EncryptorError) as exc_info:
        be.decrypt_file(enc, target, key)

    assert isinstance(exc_info.value.__cause__, OSError)
    assert not target.exists()
