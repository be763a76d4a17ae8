"""Juicity streams and UDP framing over QUIC streams."""

from __future__ import annotations

import struct
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .metadata import AddrPort, IPAddress, _join_host_port, parse_metadata
from .socks_addr import _read_exact
from .trojan import (
    TrojanMetadata,
    _unpack_into,
    network_to_byte,
    parse_network,
    unpack_metadata,
)

VERSION0 = 0x0

_LENGTH = struct.Struct(">H")


def seal_udp(metadata: TrojanMetadata, data: bytes) -> bytes:
    """Frame one UDP payload: address, length, payload."""
    if len(data) > 0xFFFF:
        raise ValueError(f"UDP payload of {len(data)} bytes is too large")
    return metadata.pack() + _LENGTH.pack(len(data)) + bytes(data)


class JuicityConn:
    """A stream carrying a network byte and target address before its first payload.

    ``stream`` needs read, write and close; cancel_read and
    set_write_deadline are used when present.
    """

    def __init__(
        self,
        stream: Any,
        metadata: Optional[TrojanMetadata] = None,
        close_defer: Optional[Callable[[], None]] = None,
    ) -> None:
        self.stream = stream
        self.metadata = metadata if metadata is not None else TrojanMetadata()
        self._close_defer = close_defer
        self._write_lock = threading.Lock()
        self._wrote_header = False
        self._read_lock = threading.Lock()
        self._read_started = False
        self._close_lock = threading.Lock()
        self._close_done = False
        self._close_error: Optional[BaseException] = None

    def _request_header(self, payload: bytes) -> bytes:
        return (
            bytes([network_to_byte(self.metadata.network)])
            + self.metadata.pack()
            + bytes(payload)
        )

    def _read_request_header(self) -> None:
        self.metadata.network = parse_network(_read_exact(self.stream, 1)[0])
        if self.metadata.length() < 2:
            raise ValueError("invalid juicity header")
        _unpack_into(self.stream, self.metadata)

    def write(self, data: bytes) -> int:
        with self._write_lock:
            if not self._wrote_header and self.metadata.is_client:
                self.stream.write(self._request_header(data))
                self._wrote_header = True
                return len(data)
            self.stream.write(bytes(data))
            return len(data)

    def read(self, size: int) -> bytes:
        with self._read_lock:
            if not self._read_started:
                self._read_started = True
                if not self.metadata.is_client:
                    self._read_request_header()
        return self.stream.read(size)

    def close(self) -> None:
        """Close both directions once; later calls repeat the first outcome."""
        with self._close_lock:
            if not self._close_done:
                self._close_done = True
                try:
                    self._close()
                except Exception as exc:
                    self._close_error = exc
        if self._close_error is not None:
            raise self._close_error

    def _close(self) -> None:
        try:
            # Unblock a pending writer so the write lock can be taken.
            set_write_deadline = getattr(self.stream, "set_write_deadline", None)
            if set_write_deadline is not None:
                try:
                    set_write_deadline(time.time())
                except Exception:
                    pass
            with self._write_lock:
                cancel_read = getattr(self.stream, "cancel_read", None)
                if cancel_read is not None:
                    cancel_read(0)
                self.stream.close()
        finally:
            if self._close_defer is not None:
                self._close_defer()

    def close_write(self) -> None:
        """Stop writing; the peer reads EOF, reading stays possible."""
        with self._write_lock:
            self.stream.close()


class JuicityPacketConn:
    """UDP datagrams framed over a JuicityConn."""

    def __init__(self, conn: JuicityConn) -> None:
        self.conn = conn
        self._domain_ip_mapping: Dict[str, IPAddress] = {}

    def write(self, data: bytes) -> int:
        metadata = self.conn.metadata
        return self.write_to(data, _join_host_port(metadata.hostname, metadata.port))

    def read(self, size: int) -> bytes:
        return self.read_from(size)[0]

    def read_from(self, size: int) -> Tuple[bytes, AddrPort]:
        metadata = unpack_metadata(self.conn)
        try:
            addr = metadata.domain_ip_mapping(self._domain_ip_mapping)
        except ValueError as exc:
            raise ValueError(f"ReadFrom AddrPort: {exc}") from exc
        length = _LENGTH.unpack(_read_exact(self.conn, 2))[0]
        if length <= size:
            return _read_exact(self.conn, length), addr
        data = _read_exact(self.conn, size)
        try:
            _read_exact(self.conn, length - size)
        except EOFError:
            pass
        return data, addr

    def write_to(self, data: bytes, addr: str) -> int:
        metadata = TrojanMetadata.from_metadata(parse_metadata(addr), "udp")
        self.conn.write(seal_udp(metadata, data))
        return len(data)

    def close(self) -> None:
        self.conn.close()