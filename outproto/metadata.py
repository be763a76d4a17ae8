"""Connection target metadata shared by the proxy protocols."""

from __future__ import annotations

import ipaddress
import re
import socket
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, MutableMapping, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
AddrPort = Tuple[IPAddress, int]

_PORT_PATTERN = re.compile(r"[+-]?[0-9]+")


class AuthenticationError(Exception):
    """Raised when a peer fails to authenticate."""

    def __init__(self, message: str = "fail to authenticate") -> None:
        super().__init__(message)


class ReplayAttackError(Exception):
    """Raised when a salt or nonce has been seen before."""

    def __init__(self, message: str = "replay attack") -> None:
        super().__init__(message)


class MetadataType(IntEnum):
    IPV4 = 0
    IPV6 = 1
    DOMAIN = 2
    MSG = 3
    INVALID = 4


class MetadataCmd(IntEnum):
    PING = 0
    SYNC_PASSAGES = 1
    RESPONSE = 2


def _address_error(hostport: str, why: str) -> ValueError:
    return ValueError(f"address {hostport}: {why}")


def _split_host_port(hostport: str) -> Tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into host and port strings."""
    i = hostport.rfind(":")
    if i < 0:
        raise _address_error(hostport, "missing port in address")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise _address_error(hostport, "missing ']' in address")
        if end + 1 == len(hostport):
            raise _address_error(hostport, "missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise _address_error(hostport, "too many colons in address")
            raise _address_error(hostport, "missing port in address")
        host = hostport[1:end]
        j, k = 1, end + 1
    else:
        host = hostport[:i]
        if ":" in host:
            raise _address_error(hostport, "too many colons in address")
        j = k = 0
    if "[" in hostport[j:]:
        raise _address_error(hostport, "unexpected '[' in address")
    if "]" in hostport[k:]:
        raise _address_error(hostport, "unexpected ']' in address")
    return host, hostport[i + 1:]


def _join_host_port(host: str, port: Union[int, str]) -> str:
    """Join host and port, bracketing hosts that contain a colon."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class Metadata:
    """Where a proxied connection goes, and how."""

    type: MetadataType = MetadataType.IPV4
    hostname: str = ""
    port: int = 0
    # Meaningful only when type is MetadataType.MSG.
    cmd: MetadataCmd = MetadataCmd.PING
    cipher: str = ""
    is_client: bool = False

    def addr_port(self) -> AddrPort:
        """Return (ip, port) for an IP target; raise ValueError otherwise."""
        if self.type in (MetadataType.IPV4, MetadataType.IPV6):
            return ipaddress.ip_address(self.hostname), self.port
        raise ValueError(f"bad metadata type: {int(self.type)}; should be ip")

    def domain_ip_mapping(self, cache: MutableMapping[str, IPAddress]) -> AddrPort:
        """Resolve the target to (ip, port), caching resolved domains in ``cache``."""
        if self.type != MetadataType.DOMAIN:
            try:
                return self.addr_port()
            except ValueError as exc:
                raise ValueError(f"ReadFrom AddrPort: {exc}") from exc
        cached = cache.get(self.hostname)
        if cached is not None:
            return cached, self.port
        resolved = _resolve_udp(self.hostname, self.port)
        return cache.setdefault(self.hostname, resolved), self.port


def _resolve_udp(hostname: str, port: int) -> IPAddress:
    infos = socket.getaddrinfo(hostname, port, type=socket.SOCK_DGRAM)
    if not infos:
        raise OSError(f"no addresses found for {hostname}")
    for family, *_rest, sockaddr in infos:
        if family == socket.AF_INET:
            return ipaddress.ip_address(sockaddr[0])
    host = str(infos[0][4][0]).split("%", 1)[0]
    return ipaddress.ip_address(host)


def parse_metadata(target: str) -> Metadata:
    """Parse ``host:port`` into Metadata, classifying the host."""
    try:
        host, port_text = _split_host_port(target)
    except ValueError as exc:
        raise ValueError(f"SplitHostPort: {exc}") from exc
    if not _PORT_PATTERN.fullmatch(port_text):
        raise ValueError(f"failed to parse port: invalid syntax: {port_text!r}")
    port = int(port_text) & 0xFFFF
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        kind = MetadataType.DOMAIN
    else:
        kind = MetadataType.IPV4 if ip.version == 4 else MetadataType.IPV6
    return Metadata(type=kind, hostname=host, port=port)


class Protocol(str):
    """A proxy protocol name; ``+`` separates its layers."""

    VMESS_TCP: ClassVar["Protocol"]
    VMESS_TLS_GRPC: ClassVar["Protocol"]
    SHADOWSOCKS: ClassVar["Protocol"]
    JUICITY: ClassVar["Protocol"]

    def valid(self) -> bool:
        return self in _KNOWN_PROTOCOLS

    def with_tls(self) -> bool:
        return "tls" in self.split("+")


Protocol.VMESS_TCP = Protocol("vmess")
Protocol.VMESS_TLS_GRPC = Protocol("vmess+tls+grpc")
Protocol.SHADOWSOCKS = Protocol("shadowsocks")
Protocol.JUICITY = Protocol("juicity")

_KNOWN_PROTOCOLS = frozenset(
    {Protocol.VMESS_TCP, Protocol.VMESS_TLS_GRPC, Protocol.SHADOWSOCKS, Protocol.JUICITY}
)