"""Shadowsocks AEAD helpers: chunk sizing, message padding and salt generators."""

from __future__ import annotations

import math
import os
import threading
from typing import Dict, Protocol

TCP_CHUNK_MAX_LEN = (1 << (16 - 2)) - 1
DEFAULT_BUCKET_SIZE = 300

_FNV32_OFFSET = 2166136261
_FNV32_PRIME = 16777619
_MASK32 = 0xFFFFFFFF


class SaltGenerator(Protocol):
    def get(self) -> bytes: ...

    def close(self) -> None: ...


def encrypted_payload_len(plain_len: int, tag_len: int) -> int:
    """Size of ``plain_len`` bytes once split into sealed chunks."""
    chunks = -(-plain_len // TCP_CHUNK_MAX_LEN)
    return plain_len + chunks * (2 + tag_len + tag_len)


def _fnv32(data: bytes, alternate: bool) -> int:
    value = _FNV32_OFFSET
    for byte in data:
        if alternate:
            value = ((value ^ byte) * _FNV32_PRIME) & _MASK32
        else:
            value = ((value * _FNV32_PRIME) & _MASK32) ^ byte
    return value


def calc_padding_len(master_key: bytes, body: bytes, request: bool) -> int:
    """Deterministic padding length for a message body; FNV-1a for requests."""
    size = len(body)
    if size == 0:
        return 0
    max_padding = max(int(10 * float(size) / (1 + math.log(size))) - size, 0)
    if max_padding == 0:
        return 0
    return _fnv32(bytes(master_key) + bytes(body), request) % max_padding


class RandomSaltGenerator:
    """Produces fresh random salts of a fixed size."""

    def __init__(self, salt_size: int) -> None:
        self.salt_size = salt_size

    def get(self) -> bytes:
        return os.urandom(self.salt_size)

    def close(self) -> None:
        return None


class DummySaltGenerator:
    """Stands in for a generator that is still being built."""

    def __init__(self) -> None:
        self.closed = threading.Event()
        self.success = False

    def get(self) -> bytes:
        return b""

    def close(self) -> None:
        if self.closed.is_set():
            raise RuntimeError("salt generator already closed")
        self.closed.set()


_generators: Dict[int, SaltGenerator] = {}
_generators_lock = threading.Lock()


def get_salt_generator(master_key: bytes, salt_len: int) -> SaltGenerator:
    """Return the shared salt generator for ``salt_len``, creating it once."""
    with _generators_lock:
        generator = _generators.get(salt_len)
        if generator is None:
            generator = RandomSaltGenerator(salt_len)
            _generators[salt_len] = generator
        return generator