"""SOCKS5 client (RFC 1928): TCP CONNECT and UDP ASSOCIATE through a proxy."""

from __future__ import annotations

import ipaddress
import threading
from typing import Any, Optional, Tuple
from urllib.parse import unquote, urlsplit

from .metadata import AddrPort, _join_host_port, _split_host_port, parse_metadata
from .socks_addr import (
    AUTH_NONE,
    AUTH_PASSWORD,
    CMD_CONNECT,
    CMD_UDP_ASSOCIATE,
    COMMANDS,
    SOCKS_ERRORS,
    _read_exact,
    format_addr,
    parse_addr,
    read_addr,
    split_addr,
)

VERSION = 5

_UDP_HEADER = b"\x00\x00\x00"


class Socks5Error(Exception):
    """The SOCKS5 proxy failed, refused, or answered with something unexpected."""


class Socks5:
    """Makes SOCKS5 connections through ``dialer`` to the proxy at ``addr``.

    ``dialer`` needs ``dial(network, address)``; for "udp" it must return an
    object with ``read_from(size)`` and ``write_to(data, address)``.
    """

    def __init__(
        self,
        dialer: Any,
        addr: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        self.dialer = dialer
        self.addr = addr
        self.user = user
        self.password = password

    def dial(self, network: str, addr: str) -> Any:
        """Open a connection to ``addr`` over the proxy; network is "tcp" or "udp"."""
        if network == "tcp":
            conn = self._dial_proxy("tcp", self.addr)
            try:
                self.connect(conn, addr, CMD_CONNECT)
            except BaseException:
                conn.close()
                raise
            return conn
        if network == "udp":
            ctrl = self._dial_proxy("tcp", self.addr)
            try:
                bound = self.connect(ctrl, addr, CMD_UDP_ASSOCIATE)
            except BaseException:
                ctrl.close()
                raise
            relay = format_addr(bound)
            host, port = _split_host_port(relay)
            try:
                unspecified = ipaddress.ip_address(host).is_unspecified
            except ValueError:
                unspecified = False
            if unspecified:
                # The proxy asks us to reuse the address we reached it on.
                proxy_host, _ = _split_host_port(self.addr)
                relay = _join_host_port(proxy_host, port)
            try:
                packet_conn = self.dialer.dial(network, relay)
            except Exception as exc:
                ctrl.close()
                raise Socks5Error(f"[socks5] dialudp to {relay} error: {exc}") from exc
            if not (hasattr(packet_conn, "read_from") and hasattr(packet_conn, "write_to")):
                ctrl.close()
                raise Socks5Error("[socks5] forwarder is not a packet conn")
            return PktConn(packet_conn, relay, addr, ctrl)
        raise Socks5Error(f"unsupported tunnel type: {network}")

    def _dial_proxy(self, network: str, address: str) -> Any:
        try:
            return self.dialer.dial(network, address)
        except Exception as exc:
            raise Socks5Error(f"[socks5]: dial to {address} error: {exc}") from exc

    def _fail(self, what: str, exc: BaseException) -> Socks5Error:
        return Socks5Error(f"proxy: failed to {what} SOCKS5 proxy at {self.addr}: {exc}")

    def connect(self, conn: Any, target: str, command: int) -> bytes:
        """Negotiate with the proxy on ``conn`` and return the bound SOCKS address."""
        user_bytes = self.user.encode() if self.user else bytes()
        credential = self.password.encode() if self.password else bytes()
        use_credentials = 0 < len(user_bytes) < 256 and len(credential) < 256
        if use_credentials:
            greeting = bytes([VERSION, 2, AUTH_NONE, AUTH_PASSWORD])
        else:
            greeting = bytes([VERSION, 1, AUTH_NONE])
        try:
            conn.write(greeting)
        except Exception as exc:
            raise self._fail("write greeting to", exc) from exc
        try:
            reply = _read_exact(conn, 2)
        except Exception as exc:
            raise self._fail("read greeting from", exc) from exc
        if reply[0] != VERSION:
            raise Socks5Error(
                f"proxy: SOCKS5 proxy at {self.addr} has unexpected version {reply[0]}"
            )
        if reply[1] == 0xFF:
            raise Socks5Error(f"proxy: SOCKS5 proxy at {self.addr} requires authentication")

        if reply[1] == AUTH_PASSWORD:
            request = (
                bytes([1, len(user_bytes) & 0xFF])
                + user_bytes
                + bytes([len(credential) & 0xFF])
                + credential
            )
            try:
                conn.write(request)
            except Exception as exc:
                raise self._fail("write authentication request to", exc) from exc
            try:
                auth_reply = _read_exact(conn, 2)
            except Exception as exc:
                raise self._fail("read authentication reply from", exc) from exc
            if auth_reply[1] != 0:
                raise Socks5Error(
                    f"proxy: SOCKS5 proxy at {self.addr} rejected username/password"
                )

        request = bytes([VERSION, command, 0]) + parse_addr(target)
        try:
            conn.write(request)
        except Exception as exc:
            raise self._fail("write connect request to", exc) from exc
        try:
            head = _read_exact(conn, 3)
        except Exception as exc:
            raise self._fail("read connect reply from", exc) from exc

        failure = "unknown error"
        if head[1] < len(SOCKS_ERRORS):
            failure = SOCKS_ERRORS[head[1]]
            if "command not supported" in failure:
                name = COMMANDS[command] if 0 <= command < len(COMMANDS) else ""
                failure += " by socks5 server: " + name
        if failure:
            raise Socks5Error(
                f"proxy: SOCKS5 proxy at {self.addr} failed to connect: {failure}"
            )
        return read_addr(conn)


def new_socks5(url: str, dialer: Any) -> Socks5:
    """Build a Socks5 from ``socks5://[user[:password]@]host:port``."""
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    user = unquote(parts.username) if parts.username else None
    password = unquote(parts.password) if parts.password else None
    return Socks5(dialer, host, user, password)


class PktConn:
    """UDP datagrams relayed through a SOCKS5 UDP ASSOCIATE."""

    def __init__(
        self,
        packet_conn: Any,
        proxy_addr: str,
        target: str,
        ctrl_conn: Optional[Any] = None,
    ) -> None:
        self._conn = packet_conn
        self.proxy_addr = proxy_addr
        self.target = target
        self._ctrl = ctrl_conn
        if ctrl_conn is not None:
            watcher = threading.Thread(target=self._watch_control, daemon=True)
            watcher.start()

    def _watch_control(self) -> None:
        # The association lives as long as the control connection.
        while True:
            try:
                self._ctrl.read(1)
            except TimeoutError:
                continue
            except Exception:
                return
            return

    def read_from(self, size: int) -> Tuple[bytes, AddrPort]:
        """Read one datagram; return its payload and the address it came from."""
        data, _ = self._conn.read_from(size)
        data = bytes(data)
        if len(data) < 3:
            raise Socks5Error("not enough size to get addr")
        addr = split_addr(data[3:])
        if addr is None:
            raise Socks5Error("can not get target addr")
        try:
            source = parse_metadata(format_addr(addr)).domain_ip_mapping({})
        except Exception as exc:
            raise Socks5Error("wrong target addr") from exc
        return data[3 + len(addr):], source

    def write_to(self, data: bytes, addr: str) -> int:
        """Send ``data`` to ``addr``; return how many payload bytes went out."""
        try:
            target = parse_addr(addr)
        except ValueError as exc:
            raise Socks5Error(f"invalid addr: {exc}") from exc
        written = self._conn.write_to(_UDP_HEADER + target + bytes(data), self.proxy_addr)
        overhead = len(target) + len(_UDP_HEADER)
        return written - overhead if written > overhead else 0

    def read(self, size: int) -> bytes:
        return self.read_from(size)[0]

    def write(self, data: bytes) -> int:
        return self.write_to(data, self.target)

    def close(self) -> None:
        if self._ctrl is not None:
            self._ctrl.close()
        self._conn.close()