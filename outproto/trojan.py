"""Trojan protocol: address metadata, request header and UDP framing."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import struct
import threading
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple, Union

from .metadata import (
    AddrPort,
    IPAddress,
    Metadata,
    MetadataCmd,
    MetadataType,
    _join_host_port,
    parse_metadata,
)
from .socks_addr import _read_exact

CRLF = b"\r\n"
PASSWORD_HASH_LEN = 56

_PORT = struct.Struct(">H")

_TYPE_FROM_BYTE = {
    1: MetadataType.IPV4,
    2: MetadataType.MSG,
    3: MetadataType.DOMAIN,
    4: MetadataType.IPV6,
}
_BYTE_FROM_TYPE = {kind: value for value, kind in _TYPE_FROM_BYTE.items()}

_NETWORK_FROM_BYTE = {1: "tcp", 3: "udp"}
_BYTE_FROM_NETWORK = {name: value for value, name in _NETWORK_FROM_BYTE.items()}


class IncorrectPasswordError(Exception):
    """The peer's password hash does not match ours."""

    def __init__(self, message: str = "incorrect password") -> None:
        super().__init__(message)


def parse_metadata_type(value: int) -> MetadataType:
    """Map a trojan address-type byte to a MetadataType."""
    return _TYPE_FROM_BYTE.get(value, MetadataType.INVALID)


def metadata_type_to_byte(metadata_type: MetadataType) -> int:
    """Map a MetadataType to its trojan address-type byte (0 if none)."""
    return _BYTE_FROM_TYPE.get(metadata_type, 0)


def parse_network(value: int) -> str:
    return _NETWORK_FROM_BYTE.get(value, "invalid")


def network_to_byte(network: str) -> int:
    return _BYTE_FROM_NETWORK.get(network, 0)


def _to_cmd(value: int) -> Union[MetadataCmd, int]:
    try:
        return MetadataCmd(value)
    except ValueError:
        return value


def _ip_text(raw: bytes) -> str:
    ip = ipaddress.ip_address(raw)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _packed_ipv4(hostname: str) -> bytes:
    ip = ipaddress.ip_address(hostname)
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is None:
            raise ValueError(f"not a valid ipv4: {hostname}")
        ip = ip.ipv4_mapped
    return ip.packed


def _packed_ipv6(hostname: str) -> bytes:
    ip = ipaddress.ip_address(hostname)
    if isinstance(ip, ipaddress.IPv4Address):
        return ipaddress.IPv6Address((0xFFFF << 32) | int(ip)).packed
    return ip.packed


def _hostname_bytes(hostname: str) -> bytes:
    return hostname.encode("utf-8", errors="surrogateescape")


@dataclass
class TrojanMetadata(Metadata):
    """Metadata together with the network ("tcp" or "udp") it travels on."""

    network: str = ""

    @classmethod
    def from_metadata(cls, metadata: Metadata, network: str) -> "TrojanMetadata":
        values = {f.name: getattr(metadata, f.name) for f in fields(Metadata)}
        return cls(**values, network=network)

    def length(self) -> int:
        """Size of the packed address in bytes."""
        if self.type == MetadataType.IPV4:
            return 3 + 4
        if self.type == MetadataType.IPV6:
            return 3 + 16
        if self.type == MetadataType.DOMAIN:
            return 4 + len(_hostname_bytes(self.hostname))
        if self.type == MetadataType.MSG:
            return 2
        return 0

    def pack(self) -> bytes:
        """Serialize the address: type byte, address, port."""
        head = bytes([metadata_type_to_byte(self.type)])
        if self.type == MetadataType.IPV4:
            return head + _packed_ipv4(self.hostname) + _PORT.pack(self.port)
        if self.type == MetadataType.IPV6:
            return head + _packed_ipv6(self.hostname) + _PORT.pack(self.port)
        if self.type == MetadataType.DOMAIN:
            raw = _hostname_bytes(self.hostname)
            if len(raw) > 255:
                raise ValueError(f"hostname {self.hostname!r} is too long")
            return head + bytes([len(raw)]) + raw + _PORT.pack(self.port)
        if self.type == MetadataType.MSG:
            return head + bytes([int(self.cmd) & 0xFF])
        return head


def _unpack_into(reader: Any, target: Metadata) -> int:
    """Read one packed address into ``target``; return the bytes consumed."""
    head = _read_exact(reader, 2)
    kind = parse_metadata_type(head[0])
    target.type = kind
    if kind == MetadataType.IPV4:
        raw = head[1:] + _read_exact(reader, 5)
        target.hostname = _ip_text(raw[:4])
        target.port = _PORT.unpack(raw[4:6])[0]
        return 7
    if kind == MetadataType.IPV6:
        raw = head[1:] + _read_exact(reader, 17)
        target.hostname = _ip_text(raw[:16])
        target.port = _PORT.unpack(raw[16:18])[0]
        return 19
    if kind == MetadataType.DOMAIN:
        size = head[1]
        raw = _read_exact(reader, size + 2)
        target.hostname = raw[:size].decode("utf-8", errors="surrogateescape")
        target.port = _PORT.unpack(raw[size:size + 2])[0]
        return 4 + size
    if kind == MetadataType.MSG:
        target.cmd = _to_cmd(head[1])
        return 2
    raise ValueError(f"unexpected metadata type: {int(kind)}")


def unpack_metadata(reader: Any) -> TrojanMetadata:
    """Read one packed address from a stream."""
    metadata = TrojanMetadata()
    _unpack_into(reader, metadata)
    return metadata


def seal_udp(metadata: TrojanMetadata, data: bytes) -> bytes:
    """Frame one UDP payload: address, length, CRLF, payload."""
    if len(data) > 0xFFFF:
        raise ValueError(f"UDP payload of {len(data)} bytes is too large")
    return metadata.pack() + _PORT.pack(len(data)) + CRLF + bytes(data)


class TrojanConn:
    """A stream that carries the trojan request header before its first payload."""

    def __init__(
        self,
        conn: Any,
        metadata: TrojanMetadata,
        password: str,
        *,
        header_delay: Optional[float] = 0.1,
    ) -> None:
        self._conn = conn
        self.metadata = metadata
        self._digest = hashlib.sha224(password.encode()).hexdigest().encode()
        self._write_lock = threading.Lock()
        self._wrote_header = False
        self._read_lock = threading.Lock()
        self._read_started = False
        if header_delay is not None and metadata.network == "tcp" and metadata.is_client:
            # Send the header even if the server is expected to speak first.
            timer = threading.Timer(header_delay, self._flush_header)
            timer.daemon = True
            timer.start()

    def _flush_header(self) -> None:
        try:
            self.write(b"")
        except Exception:
            pass

    def _request_header(self, payload: bytes) -> bytes:
        return (
            self._digest
            + CRLF
            + bytes([network_to_byte(self.metadata.network)])
            + self.metadata.pack()
            + CRLF
            + bytes(payload)
        )

    def write(self, data: bytes) -> int:
        with self._write_lock:
            if not self._wrote_header and self.metadata.is_client:
                self._conn.write(self._request_header(data))
                self._wrote_header = True
                return len(data)
            self._conn.write(bytes(data))
            return len(data)

    def read(self, size: int) -> bytes:
        with self._read_lock:
            if not self._read_started:
                self._read_started = True
                if not self.metadata.is_client:
                    self.read_request_header()
        return self._conn.read(size)

    def read_request_header(self) -> None:
        """Check the password and read the requested target into ``metadata``."""
        received = _read_exact(self._conn, PASSWORD_HASH_LEN)
        if not hmac.compare_digest(received, self._digest):
            raise IncorrectPasswordError()
        _read_exact(self._conn, len(CRLF))
        self.metadata.network = parse_network(_read_exact(self._conn, 1)[0])
        if self.metadata.length() < 2:
            raise ValueError("invalid trojan header")
        _unpack_into(self._conn, self.metadata)
        _read_exact(self._conn, len(CRLF))

    def close(self) -> None:
        self._conn.close()


class TrojanPacketConn:
    """UDP datagrams framed over a TrojanConn."""

    def __init__(self, conn: TrojanConn) -> None:
        self.conn = conn
        self._domain_ip_mapping: Dict[str, IPAddress] = {}

    def write(self, data: bytes) -> int:
        metadata = self.conn.metadata
        return self.write_to(data, _join_host_port(metadata.hostname, metadata.port))

    def read(self, size: int) -> bytes:
        return self.read_from(size)[0]

    def read_from(self, size: int) -> Tuple[bytes, AddrPort]:
        metadata = unpack_metadata(self.conn)
        addr = metadata.domain_ip_mapping(self._domain_ip_mapping)
        length = _PORT.unpack(_read_exact(self.conn, 2))[0]
        body = _read_exact(self.conn, len(CRLF) + length)
        return body[len(CRLF):][:size], addr

    def write_to(self, data: bytes, addr: str) -> int:
        metadata = TrojanMetadata.from_metadata(parse_metadata(addr), "udp")
        self.conn.write(seal_udp(metadata, data))
        return len(data)

    def close(self) -> None:
        self.conn.close()