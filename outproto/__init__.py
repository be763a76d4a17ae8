"""Target metadata, SOCKS addresses, and client framing for Trojan, Juicity, Shadowsocks and SOCKS5."""

__version__ = "0.1.0"