import pytest

from outproto.shadowsocks_util import (
    TCP_CHUNK_MAX_LEN,
    DummySaltGenerator,
    RandomSaltGenerator,
    calc_padding_len,
    encrypted_payload_len,
    get_salt_generator,
)


def test_encrypted_len_empty():
    assert encrypted_payload_len(0, 16) == 0


@pytest.mark.parametrize("tag_len", [0, 16])
def test_encrypted_len_chunks(tag_len):
    overhead = 2 + 2 * tag_len
    assert encrypted_payload_len(1, tag_len) == 1 + overhead
    assert encrypted_payload_len(TCP_CHUNK_MAX_LEN, tag_len) == TCP_CHUNK_MAX_LEN + overhead
    assert encrypted_payload_len(TCP_CHUNK_MAX_LEN + 1, tag_len) == TCP_CHUNK_MAX_LEN + 1 + 2 * overhead


def test_encrypted_len_chunk_boundary_is_16383():
    assert encrypted_payload_len(16383, 0) == 16383 + 2
    assert encrypted_payload_len(16384, 0) == 16384 + 4


def test_padding_empty_body():
    assert calc_padding_len(b"key", b"", True) == 0


@pytest.mark.parametrize("size", [1, 2, 10, 100, 1000])
@pytest.mark.parametrize("request_side", [True, False])
def test_padding_bounds_and_determinism(size, request_side):
    body = bytes(range(256)) * (size // 256 + 1)
    body = body[:size]
    first = calc_padding_len(b"key", body, request_side)
    assert first == calc_padding_len(b"key", body, request_side)
    assert 0 <= first < 10 * size


def test_padding_depends_on_side_somewhere():
    bodies = [bytes([i]) * 20 for i in range(30)]
    req = [calc_padding_len(b"key", b, True) for b in bodies]
    resp = [calc_padding_len(b"key", b, False) for b in bodies]
    assert req != resp


def test_random_generator_sizes():
    gen = RandomSaltGenerator(32)
    first, second = gen.get(), gen.get()
    assert len(first) == 32
    assert first != second
    gen.close()


def test_shared_generator():
    a = get_salt_generator(b"key", 24)
    b = get_salt_generator(b"other", 24)
    c = get_salt_generator(b"key", 16)
    assert a is b
    assert a is not c
    assert len(a.get()) == 24
    assert len(c.get()) == 16


def test_dummy_generator():
    dummy = DummySaltGenerator()
    assert dummy.get() == b""
    assert not dummy.closed.is_set()
    dummy.close()
    assert dummy.closed.is_set()
    with pytest.raises(RuntimeError):
        dummy.close()