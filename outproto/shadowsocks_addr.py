"""Shadowsocks address headers: type byte, address, port (or a message header)."""

from __future__ import annotations

import struct
from dataclasses import dataclass, fields

from .metadata import Metadata, MetadataType
from .trojan import _ip_text, _packed_ipv4, _packed_ipv6, _to_cmd

_PORT = struct.Struct(">H")
_BODY_LEN = struct.Struct(">I")

_TYPE_FROM_BYTE = {
    1: MetadataType.IPV4,
    3: MetadataType.DOMAIN,
    4: MetadataType.IPV6,
    5: MetadataType.MSG,
}
_BYTE_FROM_TYPE = {kind: value for value, kind in _TYPE_FROM_BYTE.items()}


class InvalidMetadataError(ValueError):
    """A shadowsocks address header is malformed."""


def parse_metadata_type(value: int) -> MetadataType:
    """Map a shadowsocks address-type byte to a MetadataType."""
    return _TYPE_FROM_BYTE.get(value, MetadataType.INVALID)


def metadata_type_to_byte(metadata_type: MetadataType) -> int:
    """Map a MetadataType to its shadowsocks address-type byte (0 if none)."""
    return _BYTE_FROM_TYPE.get(metadata_type, 0)


def bytes_size_for_metadata(first_two: bytes) -> int:
    """Total header size, known from its first two bytes."""
    if len(first_two) < 2:
        raise InvalidMetadataError("invalid metadata: too short")
    kind = parse_metadata_type(first_two[0])
    if kind == MetadataType.IPV4:
        return 1 + 4 + 2
    if kind == MetadataType.IPV6:
        return 1 + 16 + 2
    if kind == MetadataType.DOMAIN:
        return 1 + 1 + first_two[1] + 2
    if kind == MetadataType.MSG:
        return 1 + 1 + 4
    raise InvalidMetadataError(
        f"BytesSizeForMetadata: invalid metadata: invalid type: {first_two[0]}"
    )


@dataclass
class ShadowsocksMetadata(Metadata):
    """Metadata plus the body length that a message header carries."""

    len_msg_body: int = 0

    @classmethod
    def from_metadata(cls, metadata: Metadata, len_msg_body: int = 0) -> "ShadowsocksMetadata":
        values = {f.name: getattr(metadata, f.name) for f in fields(Metadata)}
        return cls(**values, len_msg_body=len_msg_body)

    def to_bytes(self) -> bytes:
        """Serialize the header."""
        head = bytes([metadata_type_to_byte(self.type)])
        if self.type == MetadataType.IPV4:
            try:
                packed = _packed_ipv4(self.hostname)
            except ValueError as exc:
                raise ValueError(f"not a valid ipv4: {self.hostname}") from exc
            return head + packed + _PORT.pack(self.port)
        if self.type == MetadataType.IPV6:
            try:
                packed = _packed_ipv6(self.hostname)
            except ValueError as exc:
                raise ValueError(f"not a valid ipv6: {self.hostname}") from exc
            return head + packed + _PORT.pack(self.port)
        if self.type == MetadataType.DOMAIN:
            raw = self.hostname.encode("utf-8", errors="surrogateescape")
            if len(raw) > 255:
                raise ValueError(f"hostname {self.hostname!r} is too long")
            return head + bytes([len(raw)]) + raw + _PORT.pack(self.port)
        if self.type == MetadataType.MSG:
            return head + bytes([int(self.cmd) & 0xFF]) + _BODY_LEN.pack(self.len_msg_body)
        raise InvalidMetadataError(f"invalid metadata: invalid type: {int(self.type)}")


def parse_shadowsocks_metadata(data: bytes) -> ShadowsocksMetadata:
    """Parse a header from the start of ``data``."""
    if len(data) < 2:
        raise EOFError("unexpected EOF")
    meta = ShadowsocksMetadata(type=parse_metadata_type(data[0]))
    length = bytes_size_for_metadata(data)
    if len(data) < length:
        raise InvalidMetadataError("invalid metadata: too short")
    if meta.type == MetadataType.IPV4:
        meta.hostname = _ip_text(bytes(data[1:5]))
        meta.port = _PORT.unpack(data[5:7])[0]
    elif meta.type == MetadataType.IPV6:
        meta.hostname = _ip_text(bytes(data[1:17]))
        meta.port = _PORT.unpack(data[17:19])[0]
    elif meta.type == MetadataType.DOMAIN:
        size = data[1]
        meta.hostname = bytes(data[2:2 + size]).decode("utf-8", errors="surrogateescape")
        meta.port = _PORT.unpack(data[2 + size:4 + size])[0]
    else:
        meta.cmd = _to_cmd(data[1])
        meta.len_msg_body = _BODY_LEN.unpack(data[2:6])[0]
    return meta