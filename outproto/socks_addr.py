"""SOCKS addresses as laid out in RFC 1928 section 5."""

from __future__ import annotations

import ipaddress
from typing import BinaryIO, Optional

from .metadata import _join_host_port, _split_host_port

AUTH_NONE = 0
AUTH_PASSWORD = 2

CMD_ERROR = 0
CMD_CONNECT = 1
CMD_BIND = 2
CMD_UDP_ASSOCIATE = 3

COMMANDS = ("Error", "Connect", "Bind", "UDPAssociate")

ATYP_IP4 = 1
ATYP_DOMAIN = 3
ATYP_IP6 = 4

MAX_ADDR_LEN = 1 + 1 + 255 + 2

SOCKS_ERRORS = (
    "",
    "general failure",
    "connection forbidden",
    "network unreachable",
    "host unreachable",
    "connection refused",
    "TTL expired",
    "command not supported",
    "address type not supported",
    "socks5UDPAssociate",
)

_IPV4_LEN = 4
_IPV6_LEN = 16


class AddressTypeNotSupportedError(Exception):
    """Raised for an unknown SOCKS address type."""

    def __init__(self, message: str = SOCKS_ERRORS[8]) -> None:
        super().__init__(message)


def _addr_length(data: bytes) -> Optional[int]:
    if not data:
        return None
    atyp = data[0]
    if atyp == ATYP_DOMAIN:
        if len(data) < 2:
            return None
        return 1 + 1 + data[1] + 2
    if atyp == ATYP_IP4:
        return 1 + _IPV4_LEN + 2
    if atyp == ATYP_IP6:
        return 1 + _IPV6_LEN + 2
    return None


def split_addr(data: bytes) -> Optional[bytes]:
    """Return the SOCKS address at the start of ``data``, or None."""
    length = _addr_length(data)
    if length is None or len(data) < length:
        return None
    return bytes(data[:length])


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < size:
        chunk = reader.read(size - len(chunks))
        if not chunk:
            raise EOFError(f"expected {size} bytes, got {len(chunks)}")
        chunks += chunk
    return bytes(chunks)


def read_addr(reader: BinaryIO) -> bytes:
    """Read exactly one SOCKS address from a binary stream."""
    head = _read_exact(reader, 1)
    atyp = head[0]
    if atyp == ATYP_DOMAIN:
        size = _read_exact(reader, 1)
        return head + size + _read_exact(reader, size[0] + 2)
    if atyp == ATYP_IP4:
        return head + _read_exact(reader, _IPV4_LEN + 2)
    if atyp == ATYP_IP6:
        return head + _read_exact(reader, _IPV6_LEN + 2)
    raise AddressTypeNotSupportedError()


def format_addr(addr: bytes) -> str:
    """Render a SOCKS address as ``host:port``."""
    length = _addr_length(addr)
    if length is None:
        if addr and addr[0] not in (ATYP_DOMAIN, ATYP_IP4, ATYP_IP6):
            raise AddressTypeNotSupportedError()
        raise ValueError("SOCKS address is too short")
    if len(addr) < length:
        raise ValueError("SOCKS address is too short")
    port = int.from_bytes(addr[length - 2:length], "big")
    atyp = addr[0]
    if atyp == ATYP_DOMAIN:
        host = addr[2:2 + addr[1]].decode("utf-8", errors="surrogateescape")
    elif atyp == ATYP_IP4:
        host = str(ipaddress.IPv4Address(bytes(addr[1:1 + _IPV4_LEN])))
    else:
        ip6 = ipaddress.IPv6Address(bytes(addr[1:1 + _IPV6_LEN]))
        host = str(ip6.ipv4_mapped) if ip6.ipv4_mapped is not None else str(ip6)
    return _join_host_port(host, port)


def _parse_port(text: str, address: str) -> int:
    if not text.isascii() or not text.isdigit():
        raise ValueError(f"invalid port {text!r} in {address}")
    port = int(text)
    if port > 0xFFFF:
        raise ValueError(f"port {text} out of range in {address}")
    return port


def parse_addr(address: str) -> bytes:
    """Encode ``host:port`` as a SOCKS address."""
    host, port_text = _split_host_port(address)
    ip = None
    if "%" not in host:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None
    if ip is not None:
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        atyp = ATYP_IP4 if ip.version == 4 else ATYP_IP6
        body = bytes([atyp]) + ip.packed
    else:
        raw_host = host.encode("utf-8", errors="surrogateescape")
        if len(raw_host) > 255:
            raise ValueError(f"address {address} is too long")
        body = bytes([ATYP_DOMAIN, len(raw_host)]) + raw_host
    port = _parse_port(port_text, address)
    return body + port.to_bytes(2, "big")