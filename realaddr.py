#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
realaddr (single-file)

- PROXY protocol (v1 text / v2 binary) receiver for asyncio TCP servers.
- ProxyConnection: wraps an accepted StreamReader/StreamWriter pair, performs the
  header handshake lazily (first read) or explicitly, exactly once, under an optional
  deadline, and exposes both the socket peer and the "real" client address.
- start_server(): asyncio.start_server() whose callback receives ProxyConnection objects.
- Relay listeners: accept, recover the real client, apply allowlist, forward to an
  upstream (optionally re-emitting a PROXY v1 line or the original header bytes).
- TUI (urwid): Connections view with socket peer vs real client.
"""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import os
import signal
import sys
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

import urwid
import yaml

import logging
from logging.handlers import RotatingFileHandler

__version__ = "0.3.0"

# Module logger (configured in main())
LOG = logging.getLogger("realaddr")

# Throttled logging (best-effort; designed for single-threaded asyncio loop)
_LOG_THROTTLE_STATE: dict[str, tuple[float, int]] = {}
# key -> (last_ts, suppressed_count)


def log_throttled(
    level: int,
    key: str,
    msg: str,
    *args,
    interval_s: float = 2.0,
    exc_info: bool = False,
    **kwargs,
) -> None:
    """
    Log a message at most once per interval for a given key.

    Keeps a suppressed counter; when it logs again it appends:
      " (suppressed N similar messages)"
    """
    now = time.time()
    last_ts, suppressed = _LOG_THROTTLE_STATE.get(key, (0.0, 0))

    if (now - last_ts) < float(interval_s):
        _LOG_THROTTLE_STATE[key] = (last_ts, suppressed + 1)
        return

    _LOG_THROTTLE_STATE[key] = (now, 0)

    if suppressed:
        msg = f"{msg} (suppressed {suppressed} similar messages)"
    LOG.log(level, msg, *args, exc_info=exc_info, **kwargs)


def setup_logging(log_path: str, level: str = "INFO") -> None:
    """Configure application logging.

    Defaults:
      - log file in the current working directory
      - rotating file handler (to avoid unbounded growth)

    Args:
        log_path: Path to the log file.
        level: Logging level name (e.g. INFO, DEBUG).
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    # Ensure parent directory exists (if any)
    try:
        d = os.path.dirname(log_path)
        if d:
            os.makedirs(d, exist_ok=True)
    except OSError:
        log_path = os.path.basename(log_path) or "realaddr.log"

    root = logging.getLogger()
    root.setLevel(lvl)

    # Avoid duplicate handlers (e.g. reload/tests)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        fh = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,   # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
        fh.setLevel(lvl)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError:
        # Last resort: stderr
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(lvl)
        sh.setFormatter(fmt)
        root.addHandler(sh)

    LOG.info("Logging initialized: %s level=%s", log_path, logging.getLevelName(lvl))


# ==========================================================
# PROXY protocol: address family model
# ==========================================================

PROXY_V2_SIGNATURE = b"\r\n\r\n\x00\r\nQUIT\n"
PROXY_V1_PREFIX = b"PROXY"
PROXY_V1_MAX_LINE = 107  # including CRLF
UNIX_PATH_MAX = 108


class AddressFamilyAndProtocol(int):
    """
    The v2 "fam" byte: high nibble is the address family, low nibble the transport.

      family:    0 unspec | 1 AF_INET | 2 AF_INET6 | 3 AF_UNIX
      transport: 0 unspec | 1 STREAM  | 2 DGRAM

    Any byte value can be represented; whether the parser accepts it is decided by
    is_supported. Predicates never raise: an unknown nibble just makes them all false.
    """

    __slots__ = ()

    def __new__(cls, value: int = 0) -> "AddressFamilyAndProtocol":
        value = int(value)
        if not 0 <= value <= 0xFF:
            raise ValueError(f"address family/protocol must fit in one byte, got {value}")
        return super().__new__(cls, value)

    @property
    def family(self) -> int:
        return int(self) >> 4

    @property
    def transport(self) -> int:
        return int(self) & 0x0F

    @property
    def is_ipv4(self) -> bool:
        return self.family == 0x1

    @property
    def is_ipv6(self) -> bool:
        return self.family == 0x2

    @property
    def is_unix(self) -> bool:
        return self.family == 0x3

    @property
    def is_stream(self) -> bool:
        return self.transport == 0x1

    @property
    def is_datagram(self) -> bool:
        return self.transport == 0x2

    @property
    def is_unspec(self) -> bool:
        return self.family == 0x0 or self.transport == 0x0

    @property
    def is_supported(self) -> bool:
        return int(self) in _SUPPORTED_CODES

    @property
    def v1_tag(self) -> str:
        if int(self) == 0x11:
            return "TCP4"
        if int(self) == 0x21:
            return "TCP6"
        return "UNKNOWN"

    @classmethod
    def from_v1_tag(cls, tag: str) -> "AddressFamilyAndProtocol":
        t = (tag or "").upper()
        if t == "TCP4":
            return cls.TCP_OVER_IPV4
        if t == "TCP6":
            return cls.TCP_OVER_IPV6
        return cls.UNSPEC

    def __repr__(self) -> str:
        name = _AFP_NAMES.get(int(self))
        if name:
            return f"AddressFamilyAndProtocol.{name}"
        return f"AddressFamilyAndProtocol(0x{int(self):02x})"

    __str__ = __repr__

    # populated right below the class body
    UNSPEC: "AddressFamilyAndProtocol"
    TCP_OVER_IPV4: "AddressFamilyAndProtocol"
    UDP_OVER_IPV4: "AddressFamilyAndProtocol"
    TCP_OVER_IPV6: "AddressFamilyAndProtocol"
    UDP_OVER_IPV6: "AddressFamilyAndProtocol"
    UNIX_STREAM: "AddressFamilyAndProtocol"
    UNIX_DGRAM: "AddressFamilyAndProtocol"


_AFP_NAMES: Dict[int, str] = {
    0x00: "UNSPEC",
    0x11: "TCP_OVER_IPV4",
    0x12: "UDP_OVER_IPV4",
    0x21: "TCP_OVER_IPV6",
    0x22: "UDP_OVER_IPV6",
    0x31: "UNIX_STREAM",
    0x32: "UNIX_DGRAM",
}
for _code, _name in _AFP_NAMES.items():
    setattr(AddressFamilyAndProtocol, _name, AddressFamilyAndProtocol(_code))
del _code, _name

_SUPPORTED_CODES = frozenset(c for c in _AFP_NAMES if c != 0x00)
SUPPORTED_PROTOCOLS = frozenset(AddressFamilyAndProtocol(c) for c in _SUPPORTED_CODES)


class Command(IntEnum):
    LOCAL = 0x0  # health check from the proxy itself; addresses are meaningless
    PROXY = 0x1


# ==========================================================
# PROXY protocol: errors
# ==========================================================

class ProxyProtocolError(ValueError):
    """Failure to parse a PROXY protocol header.

    The header may have been partially consumed; the connection should be closed.
    """


class InvalidHeader(ProxyProtocolError):
    pass


class UnsupportedProtocol(ProxyProtocolError):
    pass


class UnsupportedVersion(ProxyProtocolError):
    pass


class AddressFamilyMismatch(ProxyProtocolError):
    pass


class InvalidPort(ProxyProtocolError):
    pass


# ==========================================================
# Endpoints
# ==========================================================

def _check_port(port: Any) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise InvalidPort(f"port must be an integer, got {port!r}")
    if not 0 <= port <= 65535:
        raise InvalidPort(f"port out of range: {port}")
    return port


def _coerce_ip(address: Any, version: int) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
    if isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        addr = address
    else:
        try:
            addr = ipaddress.ip_address(address)
        except ValueError as e:
            raise InvalidHeader(f"not an IP literal: {address!r}") from e
    if addr.version != version:
        raise AddressFamilyMismatch(f"expected IPv{version} address, got {addr}")
    return addr


@dataclass(frozen=True)
class Endpoint:
    """Base of the endpoint variants (IPv4Endpoint | IPv6Endpoint | UnixEndpoint)."""


@dataclass(frozen=True)
class IPv4Endpoint(Endpoint):
    address: ipaddress.IPv4Address
    port: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", _coerce_ip(self.address, 4))
        object.__setattr__(self, "port", _check_port(self.port))

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class IPv6Endpoint(Endpoint):
    address: ipaddress.IPv6Address
    port: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", _coerce_ip(self.address, 6))
        object.__setattr__(self, "port", _check_port(self.port))

    def __str__(self) -> str:
        return f"[{self.address}]:{self.port}"


@dataclass(frozen=True)
class UnixEndpoint(Endpoint):
    path: bytes

    def __post_init__(self) -> None:
        path = self.path
        if isinstance(path, str):
            path = os.fsencode(path)
        if not isinstance(path, (bytes, bytearray)):
            raise TypeError(f"unix path must be bytes or str, got {type(path).__name__}")
        if len(path) > UNIX_PATH_MAX:
            raise InvalidHeader(f"unix path longer than {UNIX_PATH_MAX} bytes")
        object.__setattr__(self, "path", bytes(path))

    def __str__(self) -> str:
        return self.path.decode("utf-8", errors="replace")


IP_ENDPOINT_TYPES = (IPv4Endpoint, IPv6Endpoint)


def ip_endpoint(address: Any, port: int) -> Endpoint:
    """Build the IPv4/IPv6 endpoint matching a literal (never a DNS name)."""
    if isinstance(address, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        addr = address
    else:
        try:
            addr = ipaddress.ip_address(address)
        except ValueError as e:
            raise InvalidHeader(f"not an IP literal: {address!r}") from e
    if addr.version == 4:
        return IPv4Endpoint(addr, port)
    return IPv6Endpoint(addr, port)


def endpoint_from_sockaddr(sockaddr: Any) -> Optional[Endpoint]:
    """Convert asyncio peername/sockname values into an Endpoint."""
    if sockaddr is None:
        return None
    if isinstance(sockaddr, (str, bytes, bytearray)):
        return UnixEndpoint(sockaddr)
    if isinstance(sockaddr, tuple) and len(sockaddr) >= 2:
        host, port = sockaddr[0], sockaddr[1]
        if len(sockaddr) == 4:
            return IPv6Endpoint(host, int(port))
        return ip_endpoint(host, int(port))
    raise ValueError(f"unsupported socket address: {sockaddr!r}")


# ==========================================================
# ProxyHeader
# ==========================================================

@dataclass(frozen=True)
class ProxyHeader:
    """
    A decoded PROXY protocol header.

    protocol:    address family/transport (UNSPEC for a v1 "UNKNOWN" line)
    source:      original client endpoint
    destination: original destination endpoint (the proxy's listener, as seen by the client)
    command:     PROXY (v1 is always PROXY; LOCAL v2 headers are never returned by the parser)
    version:     1 | 2
    raw:         exact bytes consumed from the stream, kept for forwarding upstream
    """
    protocol: AddressFamilyAndProtocol
    source: Endpoint
    destination: Endpoint
    command: Command = Command.PROXY
    version: int = 1
    raw: bytes = field(default=b"", compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", AddressFamilyAndProtocol(self.protocol))
        object.__setattr__(self, "command", Command(self.command))
        if self.version not in (1, 2):
            raise ValueError(f"unsupported PROXY protocol version {self.version}")

        expected: Optional[type] = None
        if self.protocol.is_ipv4:
            expected = IPv4Endpoint
        elif self.protocol.is_ipv6:
            expected = IPv6Endpoint
        elif self.protocol.is_unix:
            expected = UnixEndpoint

        for ep in (self.source, self.destination):
            if not isinstance(ep, Endpoint):
                raise TypeError(f"endpoint expected, got {type(ep).__name__}")
            if expected is not None and not isinstance(ep, expected):
                raise AddressFamilyMismatch(f"{self.protocol!r} header carries {ep}")

    @property
    def source_address(self) -> Any:
        return self.source.path if isinstance(self.source, UnixEndpoint) else self.source.address

    @property
    def source_port(self) -> Optional[int]:
        return getattr(self.source, "port", None)

    @property
    def destination_address(self) -> Any:
        if isinstance(self.destination, UnixEndpoint):
            return self.destination.path
        return self.destination.address

    @property
    def destination_port(self) -> Optional[int]:
        return getattr(self.destination, "port", None)


# ==========================================================
# Buffered cursor over asyncio.StreamReader
# ==========================================================

class BufferedStream:
    """
    Peekable, discardable cursor over an asyncio.StreamReader.

    Once a reader is wrapped, every read of the connection must go through this object:
    bytes peeked during header detection stay in the private buffer and are served to
    the application afterwards.

    A read deadline (absolute time.monotonic() value) bounds every blocking fill until
    it is cleared with set_read_deadline(None).
    """

    def __init__(self, reader: asyncio.StreamReader, chunk_size: int = 64 * 1024):
        self._reader = reader
        self._buf = bytearray()
        self._eof = False
        self._deadline: Optional[float] = None
        self._chunk_size = int(chunk_size)

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self._deadline = deadline

    @property
    def read_deadline(self) -> Optional[float]:
        return self._deadline

    def at_eof(self) -> bool:
        return not self._buf and (self._eof or self._reader.at_eof())

    async def fill(self) -> bool:
        """Append one chunk from the transport. Returns False at EOF."""
        if self._eof:
            return False
        if self._deadline is None:
            chunk = await self._reader.read(self._chunk_size)
        else:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                raise asyncio.TimeoutError("read deadline exceeded")
            chunk = await asyncio.wait_for(self._reader.read(self._chunk_size), timeout=remaining)
        if not chunk:
            self._eof = True
            return False
        self._buf.extend(chunk)
        return True

    def peek_nowait(self, n: int) -> bytes:
        return bytes(self._buf[:n])

    async def peek(self, n: int) -> bytes:
        """Return up to n bytes without consuming them (fewer only at EOF)."""
        while len(self._buf) < n:
            if not await self.fill():
                break
        return bytes(self._buf[:n])

    async def readexactly(self, n: int) -> bytes:
        while len(self._buf) < n:
            if not await self.fill():
                partial = bytes(self._buf)
                self._buf.clear()
                raise asyncio.IncompleteReadError(partial, n)
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    async def discard(self, n: int) -> None:
        await self.readexactly(n)

    async def readuntil(self, separator: bytes = b"\n", limit: Optional[int] = None) -> bytes:
        """
        Read through `separator` (inclusive).

        Raises LimitOverrunError if the separator does not end within `limit` bytes
        (nothing is consumed), IncompleteReadError on EOF.
        """
        seplen = len(separator)
        while True:
            idx = self._buf.find(separator)
            if idx >= 0:
                end = idx + seplen
                if limit is not None and end > limit:
                    raise asyncio.LimitOverrunError("separator is found, but chunk is longer than limit", idx)
                data = bytes(self._buf[:end])
                del self._buf[:end]
                return data
            if limit is not None and len(self._buf) >= limit:
                raise asyncio.LimitOverrunError("separator is not found, and chunk exceed the limit", len(self._buf))
            if not await self.fill():
                partial = bytes(self._buf)
                self._buf.clear()
                raise asyncio.IncompleteReadError(partial, None)

    async def readline(self, limit: Optional[int] = None) -> bytes:
        """
        Read one line. Like StreamReader.readline(): a partial line at EOF is returned,
        an overlong line is dropped and raises ValueError.
        """
        try:
            return await self.readuntil(b"\n", limit=limit)
        except asyncio.IncompleteReadError as e:
            return e.partial
        except asyncio.LimitOverrunError as e:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                del self._buf[:idx + 1]
            else:
                self._buf.clear()
            raise ValueError(e.args[0]) from e

    async def read(self, n: int = -1) -> bytes:
        if n == 0:
            return b""
        if n < 0:
            while await self.fill():
                pass
            data = bytes(self._buf)
            self._buf.clear()
            return data
        if not self._buf:
            await self.fill()
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data


# ==========================================================
# PROXY protocol: parser
# ==========================================================

_V2_ADDRESS_LENGTH = {
    0x1: 4 + 4 + 2 + 2,        # AF_INET
    0x2: 16 + 16 + 2 + 2,      # AF_INET6
    0x3: UNIX_PATH_MAX * 2,    # AF_UNIX
}


async def _detect_version(stream: BufferedStream) -> Optional[int]:
    """
    Sniff the stream start: 2 for the v2 signature, 1 for "PROXY", None otherwise.

    Never consumes. Stops filling as soon as the buffered prefix cannot belong to
    either signature, so a short non-PROXY greeting is not held back.
    """
    while True:
        head = stream.peek_nowait(len(PROXY_V2_SIGNATURE))
        if head == PROXY_V2_SIGNATURE:
            return 2
        if head[:len(PROXY_V1_PREFIX)] == PROXY_V1_PREFIX:
            return 1
        if not (PROXY_V2_SIGNATURE.startswith(head) or PROXY_V1_PREFIX.startswith(head)):
            return None
        if not await stream.fill():
            return None


def _parse_v1_address(protocol: AddressFamilyAndProtocol, token: str):
    try:
        addr = ipaddress.ip_address(token)
    except ValueError as e:
        raise InvalidHeader(f"invalid PROXY v1 address {token!r}") from e
    if protocol.is_ipv4 and addr.version != 4:
        raise AddressFamilyMismatch(f"PROXY v1 family mismatch for TCP4: {token}")
    if protocol.is_ipv6 and addr.version != 6:
        raise AddressFamilyMismatch(f"PROXY v1 family mismatch for TCP6: {token}")
    return addr


def _parse_v1_port(token: str) -> int:
    if not token or len(token) > 5 or not token.isdigit():
        raise InvalidPort(f"invalid PROXY v1 port {token!r}")
    port = int(token, 10)
    if port > 65535:
        raise InvalidPort(f"PROXY v1 port out of range: {port}")
    return port


def _parse_proxy_v1_line(line: bytes) -> ProxyHeader:
    if not line.endswith(b"\r\n"):
        raise InvalidHeader("PROXY v1 header not terminated by CRLF")
    try:
        text = line[:-2].decode("ascii")
    except UnicodeDecodeError as e:
        raise InvalidHeader("PROXY v1 header is not ASCII") from e

    parts = text.split(" ")
    if len(parts) != 6 or parts[0] != "PROXY":
        raise InvalidHeader(f"invalid PROXY v1 header: expected 6 fields, got {len(parts)}")

    protocol = AddressFamilyAndProtocol.from_v1_tag(parts[1])
    src_ip = _parse_v1_address(protocol, parts[2])
    dst_ip = _parse_v1_address(protocol, parts[3])
    src_port = _parse_v1_port(parts[4])
    dst_port = _parse_v1_port(parts[5])

    return ProxyHeader(
        protocol=protocol,
        source=ip_endpoint(src_ip, src_port),
        destination=ip_endpoint(dst_ip, dst_port),
        command=Command.PROXY,
        version=1,
        raw=bytes(line),
    )


async def _parse_v1(stream: BufferedStream) -> ProxyHeader:
    try:
        line = await stream.readuntil(b"\r\n", limit=PROXY_V1_MAX_LINE)
    except asyncio.LimitOverrunError as e:
        raise InvalidHeader("PROXY v1 header too long") from e
    except asyncio.IncompleteReadError as e:
        raise InvalidHeader("PROXY v1 header not terminated by CRLF") from e
    return _parse_proxy_v1_line(line)


async def _read_v2(stream: BufferedStream, n: int) -> bytes:
    try:
        return await stream.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise InvalidHeader("truncated PROXY v2 header") from e


def _decode_v2_addresses(protocol: AddressFamilyAndProtocol, payload: bytes) -> Tuple[Endpoint, Endpoint]:
    if protocol.is_ipv4:
        src = IPv4Endpoint(ipaddress.IPv4Address(payload[0:4]), int.from_bytes(payload[8:10], "big"))
        dst = IPv4Endpoint(ipaddress.IPv4Address(payload[4:8]), int.from_bytes(payload[10:12], "big"))
        return src, dst
    if protocol.is_ipv6:
        src = IPv6Endpoint(ipaddress.IPv6Address(payload[0:16]), int.from_bytes(payload[32:34], "big"))
        dst = IPv6Endpoint(ipaddress.IPv6Address(payload[16:32]), int.from_bytes(payload[34:36], "big"))
        return src, dst
    src_path = payload[:UNIX_PATH_MAX].rstrip(b"\x00")
    dst_path = payload[UNIX_PATH_MAX:2 * UNIX_PATH_MAX].rstrip(b"\x00")
    return UnixEndpoint(src_path), UnixEndpoint(dst_path)


async def _parse_v2(stream: BufferedStream, *, allow_tlvs: bool = False) -> Optional[ProxyHeader]:
    raw = bytearray(await _read_v2(stream, len(PROXY_V2_SIGNATURE)))

    ver_cmd = await _read_v2(stream, 1)
    raw += ver_cmd
    version = ver_cmd[0] >> 4
    cmd = ver_cmd[0] & 0x0F
    if version != 2:
        raise UnsupportedVersion(f"unsupported PROXY protocol version {version}")
    if cmd not in (Command.LOCAL, Command.PROXY):
        raise InvalidHeader(f"invalid PROXY v2 command 0x{cmd:x}")

    fam = await _read_v2(stream, 1)
    raw += fam
    protocol = AddressFamilyAndProtocol(fam[0])

    plen_b = await _read_v2(stream, 2)
    raw += plen_b
    plen = int.from_bytes(plen_b, "big")

    # The whole declared block is consumed before any validation so the stream stays
    # aligned on the next byte after the header, whatever the outcome.
    payload = await _read_v2(stream, plen)
    raw += payload

    if cmd == Command.LOCAL:
        LOG.debug("PROXY v2 LOCAL command, %d bytes skipped", plen)
        return None

    if not protocol.is_supported:
        raise UnsupportedProtocol(f"unsupported PROXY v2 address family/protocol {protocol!r}")

    expected = _V2_ADDRESS_LENGTH[protocol.family]
    if plen < expected or (plen > expected and not allow_tlvs):
        raise InvalidHeader(f"invalid PROXY v2 length {plen} for {protocol!r} (expected {expected})")

    src, dst = _decode_v2_addresses(protocol, payload[:expected])
    return ProxyHeader(
        protocol=protocol,
        source=src,
        destination=dst,
        command=Command.PROXY,
        version=2,
        raw=bytes(raw),
    )


async def consume_proxy_header(stream: BufferedStream, *, allow_tlvs: bool = False) -> Optional[ProxyHeader]:
    """
    Detect and consume a PROXY protocol header at the current stream position.

    Returns:
      - ProxyHeader when a v1/v2 header was decoded and validated
      - None when no header is present (nothing consumed) or for a v2 LOCAL command
        (header consumed, connection is to be treated as direct)

    Raises a ProxyProtocolError subclass on a malformed header; bytes already read
    are not given back and the connection should be closed. Transport errors and
    asyncio.TimeoutError (read deadline) propagate as-is.
    """
    version = await _detect_version(stream)
    if version is None:
        return None
    if version == 2:
        return await _parse_v2(stream, allow_tlvs=allow_tlvs)
    return await _parse_v1(stream)


# ==========================================================
# PROXY protocol: writer (v1 only)
# ==========================================================

def format_proxy_line(header: ProxyHeader) -> bytes:
    """Serialize a header as a PROXY v1 line. Only IP endpoints can be expressed."""
    src, dst = header.source, header.destination
    if header.protocol.is_unix or not isinstance(src, IP_ENDPOINT_TYPES) or not isinstance(dst, IP_ENDPOINT_TYPES):
        raise ValueError("PROXY v1 line can only carry IP endpoints")
    line = f"PROXY {header.protocol.v1_tag} {src.address} {dst.address} {src.port} {dst.port}\r\n"
    return line.encode("ascii")


async def write_proxy_line(writer: asyncio.StreamWriter, header: ProxyHeader) -> None:
    writer.write(format_proxy_line(header))
    await writer.drain()


# ==========================================================
# ProxyConnection (connection wrapper)
# ==========================================================

ParserFn = Callable[..., Awaitable[Optional[ProxyHeader]]]

# same default as asyncio.StreamReader
DEFAULT_LINE_LIMIT = 2 ** 16


class ProxyConnection:
    """
    Wrapper for one accepted connection that may start with a PROXY protocol header.

    Handshake:
      - runs once per connection: on the first application read, or explicitly via
        proxy_handshake() (e.g. before looking at real_remote_address)
      - concurrent triggers collapse: one runs the parser, the others wait on the lock
        and observe the same header / absence / exception
      - header_timeout bounds only the header sniff; the deadline is cleared afterwards
      - on error the writer is closed: the connection is not usable any more

    Addresses:
      - local_address / remote_address: socket level, always available
      - real_local_address / real_remote_address: from the header when one was decoded,
        otherwise the socket level addresses

    Writes never trigger the handshake. readline()/readuntil() are bounded by `limit`
    the way asyncio.StreamReader is.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        header_timeout: Optional[float] = None,
        allow_tlvs: bool = False,
        parser: Optional[ParserFn] = None,
        limit: int = DEFAULT_LINE_LIMIT,
    ):
        if limit <= 0:
            raise ValueError("Limit cannot be <= 0")
        self._stream = BufferedStream(reader)
        self._limit = int(limit)
        self._writer = writer
        self._header_timeout = float(header_timeout) if header_timeout else None
        self._allow_tlvs = bool(allow_tlvs)
        self._parser: ParserFn = parser or consume_proxy_header

        self._lock = asyncio.Lock()
        self._handshake_done = False
        self._header: Optional[ProxyHeader] = None
        self._handshake_error: Optional[BaseException] = None

    # --- handshake ---

    @property
    def handshake_done(self) -> bool:
        return self._handshake_done

    @property
    def proxy_data_available(self) -> bool:
        return self._header is not None

    @property
    def header(self) -> Optional[ProxyHeader]:
        return self._header

    @property
    def handshake_error(self) -> Optional[BaseException]:
        return self._handshake_error

    async def proxy_handshake(self) -> Optional[ProxyHeader]:
        if not self._handshake_done:
            async with self._lock:
                if not self._handshake_done:
                    await self._run_handshake()
        if self._handshake_error is not None:
            # shared by every caller: drop frames left by earlier raises
            raise self._handshake_error.with_traceback(None)
        return self._header

    async def _run_handshake(self) -> None:
        if self._header_timeout:
            self._stream.set_read_deadline(time.monotonic() + self._header_timeout)
        try:
            header = await self._parser(self._stream, allow_tlvs=self._allow_tlvs)
        except asyncio.CancelledError:
            self._fail(ConnectionAbortedError("PROXY handshake cancelled"))
            raise
        except Exception as e:
            self._fail(e)
        else:
            self._header = header
        finally:
            self._stream.set_read_deadline(None)
            self._handshake_done = True

    def _fail(self, exc: BaseException) -> None:
        self._handshake_error = exc
        LOG.debug("PROXY handshake failed peer=%s: %r", self._peer_label(), exc)
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()

    def _peer_label(self) -> str:
        try:
            return str(self.remote_address)
        except ValueError:
            return "?"

    # --- addresses ---

    @property
    def local_address(self) -> Optional[Endpoint]:
        return endpoint_from_sockaddr(self._writer.get_extra_info("sockname"))

    @property
    def remote_address(self) -> Optional[Endpoint]:
        return endpoint_from_sockaddr(self._writer.get_extra_info("peername"))

    @property
    def real_local_address(self) -> Optional[Endpoint]:
        if self._header is not None:
            return self._header.destination
        return self.local_address

    @property
    def real_remote_address(self) -> Optional[Endpoint]:
        if self._header is not None:
            return self._header.source
        return self.remote_address

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return self._writer.get_extra_info(name, default)

    # --- reads (trigger the handshake) ---

    async def read(self, n: int = -1) -> bytes:
        await self.proxy_handshake()
        return await self._stream.read(n)

    async def readexactly(self, n: int) -> bytes:
        await self.proxy_handshake()
        return await self._stream.readexactly(n)

    async def readline(self) -> bytes:
        await self.proxy_handshake()
        return await self._stream.readline(limit=self._limit)

    async def readuntil(self, separator: bytes = b"\n") -> bytes:
        await self.proxy_handshake()
        return await self._stream.readuntil(separator, limit=self._limit)

    def at_eof(self) -> bool:
        return self._stream.at_eof()

    # --- writes (never trigger the handshake) ---

    def write(self, data: bytes) -> None:
        self._writer.write(data)

    def writelines(self, data) -> None:
        self._writer.writelines(data)

    async def drain(self) -> None:
        await self._writer.drain()

    def can_write_eof(self) -> bool:
        return self._writer.can_write_eof()

    def write_eof(self) -> None:
        self._writer.write_eof()

    def is_closing(self) -> bool:
        return self._writer.is_closing()

    def close(self) -> None:
        self._writer.close()

    async def wait_closed(self) -> None:
        await self._writer.wait_closed()


ConnectedCb = Callable[[ProxyConnection], Any]


async def start_server(
    client_connected_cb: ConnectedCb,
    host: Any = None,
    port: Optional[int] = None,
    *,
    header_timeout: Optional[float] = None,
    allow_tlvs: bool = False,
    limit: int = DEFAULT_LINE_LIMIT,
    **kwds,
) -> asyncio.AbstractServer:
    """
    asyncio.start_server() for listeners behind a PROXY protocol load balancer.

    Every accepted connection is handed to client_connected_cb as a ProxyConnection
    (header_timeout / allow_tlvs / limit applied); the callback may be a plain function
    or a coroutine function. The returned server exposes sockets/close()/wait_closed()
    as usual. Extra keyword arguments go to asyncio.start_server().
    """

    async def _accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = ProxyConnection(
            reader,
            writer,
            header_timeout=header_timeout,
            allow_tlvs=allow_tlvs,
            limit=limit,
        )
        res = client_connected_cb(conn)
        if asyncio.iscoroutine(res):
            await res

    return await asyncio.start_server(_accept, host=host, port=port, **kwds)


# ==========================================================
# Config model
# ==========================================================

FORWARD_MODES = ("none", "v1", "raw")


@dataclass
class ProxyProtocolConfig:
    # seconds; None disables the deadline
    header_timeout: Optional[float] = 1.0
    allow_tlvs: bool = False
    # what to send to the upstream before the payload: none | v1 | raw
    forward: str = "none"


@dataclass
class PolicyConfig:
    allowlist: List[str] = field(default_factory=list)
    max_connections: int = 200
    upstream_connect_timeout: float = 5.0


@dataclass
class ListenerConfig:
    name: str
    listen: str
    upstream: str
    proxy_protocol: ProxyProtocolConfig = field(default_factory=ProxyProtocolConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)


@dataclass
class AppConfig:
    listeners: List[ListenerConfig]


def dump_example_config() -> str:
    example = {
        "listeners": [
            {
                "name": "web",
                "listen": "0.0.0.0:8080",
                "upstream": "127.0.0.1:9000",
                "proxy_protocol": {
                    "header_timeout": 1.0,
                    "allow_tlvs": False,
                    "forward": "v1",
                },
                "policy": {
                    "allowlist": ["127.0.0.0/8", "10.0.0.0/8", "192.168.0.0/16"],
                    "max_connections": 200,
                    "upstream_connect_timeout": 5.0,
                },
            }
        ]
    }
    return yaml.safe_dump(example, sort_keys=False)


def _parse_hostport(addr: str) -> Tuple[str, int]:
    try:
        host, port_s = addr.rsplit(":", 1)
        port = int(port_s)
    except ValueError as e:
        raise ValueError(f"invalid host:port {addr!r}") from e
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host or not 0 <= port <= 65535:
        raise ValueError(f"invalid host:port {addr!r}")
    return host, port


def _parse_header_timeout(value: Any) -> Optional[float]:
    if value is None:
        return None
    t = float(value)
    if t < 0:
        raise ValueError(f"proxy_protocol.header_timeout must be >= 0, got {value!r}")
    return t or None


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict) or not isinstance(raw.get("listeners"), list):
        raise ValueError("Config must be a dict with 'listeners' list")

    listeners: List[ListenerConfig] = []
    names = set()
    for item in raw["listeners"]:
        if not isinstance(item, dict):
            raise ValueError("each listener must be a mapping")
        pp_raw = item.get("proxy_protocol") or {}
        pol_raw = item.get("policy") or {}

        name = str(item["name"])
        if name in names:
            raise ValueError(f"duplicate listener name {name!r}")
        names.add(name)

        _parse_hostport(str(item["listen"]))
        _parse_hostport(str(item["upstream"]))

        forward = str(pp_raw.get("forward", "none")).lower()
        if forward not in FORWARD_MODES:
            raise ValueError(f"listener {name}: proxy_protocol.forward must be one of {FORWARD_MODES}")

        pp = ProxyProtocolConfig(
            header_timeout=_parse_header_timeout(pp_raw.get("header_timeout", 1.0)),
            allow_tlvs=bool(pp_raw.get("allow_tlvs", False)),
            forward=forward,
        )
        policy = PolicyConfig(
            allowlist=[str(x) for x in list(pol_raw.get("allowlist", []))],
            max_connections=int(pol_raw.get("max_connections", 200)),
            upstream_connect_timeout=float(pol_raw.get("upstream_connect_timeout", 5.0)),
        )
        if policy.max_connections <= 0:
            raise ValueError(f"listener {name}: policy.max_connections must be > 0")

        listeners.append(
            ListenerConfig(
                name=name,
                listen=str(item["listen"]),
                upstream=str(item["upstream"]),
                proxy_protocol=pp,
                policy=policy,
            )
        )
    return AppConfig(listeners=listeners)


# Security policy
class SecurityPolicy:
    def __init__(self, allowlist: List[str]):
        self.allowlist = allowlist or []

        self._nets: List[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]] = []
        for c in self.allowlist:
            try:
                self._nets.append(ipaddress.ip_network(c, strict=False))
            except ValueError:
                LOG.error("Invalid CIDR in allowlist ignored: %r", c, exc_info=True)

    def allow(self, endpoint: Optional[Endpoint]) -> bool:
        """Return True if the (real) client is allowed. Empty allowlist = allow all."""
        if not self._nets:
            return True
        if not isinstance(endpoint, IP_ENDPOINT_TYPES):
            return False
        addr = endpoint.address
        for n in self._nets:
            if addr.version == n.version and addr in n:
                return True
        return False


# ==========================================================
# Connection model + store (Connections view)
# ==========================================================

@dataclass
class ConnInfo:
    """
    Summary of a single relayed connection for the Connections view.

    peer is what the socket reports (usually the load balancer); client is the real
    client recovered from the PROXY header (equal to peer when there is none).
    """
    id: str
    listener: str
    peer: str
    client: str
    upstream_addr: str

    opened_ts: float
    last_activity_ts: float

    closed_ts: Optional[float] = None
    close_reason: Optional[str] = None
    closed_by: Optional[str] = None  # "client" | "upstream" | "proxy"

    proxy_version: Optional[str] = None   # none|v1|v2|invalid
    proxy_src: Optional[str] = None
    proxy_dst: Optional[str] = None

    bytes_up: int = 0
    bytes_down: int = 0

    last_error: Optional[str] = None
    error_count: int = 0

    def age_s(self) -> int:
        return max(0, int(time.time() - self.opened_ts))


class ConnectionStore:
    """
    Storage for ConnInfo shown in the Connections view.

    Maintains:
      - active connections
      - closed history (ring buffer) so short-lived connections remain visible
    """
    def __init__(self, closed_max: int = 2000):
        self._lock = asyncio.Lock()
        self._active: Dict[str, ConnInfo] = {}
        self._closed: Deque[ConnInfo] = deque(maxlen=int(closed_max))

    async def add(self, ci: ConnInfo) -> None:
        async with self._lock:
            self._active[ci.id] = ci

    async def remove(
            self,
            conn_id: str,
            *,
            close_reason: Optional[str] = None,
            closed_by: Optional[str] = None,
    ) -> Optional[ConnInfo]:
        """Finalize an active connection and move it into the closed history ring."""
        async with self._lock:
            ci = self._active.pop(conn_id, None)
            if not ci:
                return None
            if close_reason is not None:
                ci.close_reason = close_reason
            if closed_by is not None:
                ci.closed_by = closed_by
            cr_l = (ci.close_reason or "").lower()
            if any(x in cr_l for x in ("fail", "error", "timeout", "denied")) and ci.error_count <= 0:
                ci.error_count = 1
            ci.closed_ts = time.time()
            self._closed.append(ci)
            return ci

    async def add_bytes(self, conn_id: str, *, up: int = 0, down: int = 0) -> None:
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.bytes_up += up
                ci.bytes_down += down
                ci.last_activity_ts = time.time()

    async def set_proxy_info(
            self,
            conn_id: str,
            *,
            proxy_version: Optional[str],
            client: Optional[str] = None,
            proxy_src: Optional[str] = None,
            proxy_dst: Optional[str] = None,
    ) -> None:
        """Persist detected inbound PROXY protocol metadata for connection."""
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci:
                ci.proxy_version = proxy_version
                if client:
                    ci.client = client
                ci.proxy_src = proxy_src
                ci.proxy_dst = proxy_dst
                ci.last_activity_ts = time.time()

    async def set_error(self, conn_id: str, err: str) -> None:
        """Set last_error for active connection (truncated)."""
        async with self._lock:
            c = self._active.get(conn_id)
            if c:
                c.last_error = (err or "")[:500]
                c.error_count += 1
                c.last_activity_ts = time.time()

    async def get(self, conn_id: str) -> Optional[ConnInfo]:
        async with self._lock:
            ci = self._active.get(conn_id)
            if ci is not None:
                return ci
            for c in self._closed:
                if c.id == conn_id:
                    return c
            return None

    async def snapshot(self, *, include_closed: bool = False) -> List[ConnInfo]:
        """Return a snapshot for UI: active only or active+closed history."""
        async with self._lock:
            active = sorted(self._active.values(), key=lambda c: c.opened_ts)
            if not include_closed:
                return active
            return active + list(self._closed)


# ==========================================================
# Listener runtime (accept loop + relay)
# ==========================================================

class UpstreamConnectTimeout(Exception):
    pass


class ListenerRuntime:
    """
    Runtime for a single listener (one config section).

    Per accepted connection:
      1) wrap it in ProxyConnection and register a ConnInfo immediately
      2) run the PROXY handshake (bounded by proxy_protocol.header_timeout);
         a malformed header or timeout closes the connection
      3) allowlist check against the REAL client address
      4) connect upstream, optionally forward the header (v1 line or original bytes)
      5) pump bytes both ways until one side closes; finalize the ConnInfo
    """
    def __init__(self, cfg: ListenerConfig, conn_store: ConnectionStore):
        self.cfg = cfg
        self.conn_store = conn_store

        self.running = False
        self.errors = 0

        self._policy = SecurityPolicy(cfg.policy.allowlist)
        self._conn_sem = asyncio.Semaphore(cfg.policy.max_connections)
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: set = set()

    @property
    def listen_address(self) -> Optional[Tuple[str, int]]:
        if self._server is None or not self._server.sockets:
            return None
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self) -> None:
        host, port = _parse_hostport(self.cfg.listen)
        pp_cfg = self.cfg.proxy_protocol
        try:
            self._server = await start_server(
                self._handle_client,
                host,
                port,
                header_timeout=pp_cfg.header_timeout,
                allow_tlvs=pp_cfg.allow_tlvs,
            )
        except OSError:
            LOG.error("Listener start failed: start_server error listener=%s listen=%s",
                      self.cfg.name, self.cfg.listen, exc_info=True)
            raise
        self.running = True
        LOG.info("Listener started listener=%s listen=%s upstream=%s forward=%s",
                 self.cfg.name, self.listen_address, self.cfg.upstream, self.cfg.proxy_protocol.forward)

    async def stop(self) -> None:
        srv = self._server
        if srv is not None:
            srv.close()

        # handlers go first: wait_closed() waits for active connections on newer Pythons
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = set()

        if srv is not None:
            await srv.wait_closed()
            self._server = None
        self.running = False

    async def _handle_client(self, conn: ProxyConnection) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        peer = conn.remote_address
        peer_s = str(peer) if peer is not None else "?"

        try:
            await self._conn_sem.acquire()
        except asyncio.CancelledError:
            conn.close()
            if task is not None:
                self._tasks.discard(task)
            raise
        conn_id = str(uuid.uuid4())
        opened_ts = time.time()
        await self.conn_store.add(
            ConnInfo(
                id=conn_id,
                listener=self.cfg.name,
                peer=peer_s,
                client=peer_s,
                upstream_addr=self.cfg.upstream,
                opened_ts=opened_ts,
                last_activity_ts=opened_ts,
            )
        )

        close_reason: Optional[str] = None
        closed_by: Optional[str] = None
        try:
            try:
                header = await conn.proxy_handshake()
            except ProxyProtocolError as e:
                self.errors += 1
                close_reason, closed_by = "proxy_protocol_error", "client"
                await self.conn_store.set_proxy_info(conn_id, proxy_version="invalid")
                await self.conn_store.set_error(conn_id, f"proxy protocol parse failed: {e}")
                log_throttled(logging.WARNING, f"pp_error:{self.cfg.name}",
                              "PROXY header rejected listener=%s peer=%s: %s", self.cfg.name, peer_s, e)
                return
            except asyncio.TimeoutError:
                self.errors += 1
                close_reason, closed_by = "proxy_header_timeout", "proxy"
                await self.conn_store.set_proxy_info(conn_id, proxy_version="invalid")
                await self.conn_store.set_error(conn_id, "PROXY header timeout")
                log_throttled(logging.WARNING, f"pp_timeout:{self.cfg.name}",
                              "PROXY header timeout listener=%s peer=%s", self.cfg.name, peer_s)
                return
            except (OSError, ConnectionError) as e:
                close_reason, closed_by = "client_read_error", "client"
                await self.conn_store.set_error(conn_id, f"client read failed during handshake: {e}")
                return

            real = conn.real_remote_address
            await self.conn_store.set_proxy_info(
                conn_id,
                proxy_version=f"v{header.version}" if header is not None else "none",
                client=str(real) if real is not None else None,
                proxy_src=str(header.source) if header is not None else None,
                proxy_dst=str(header.destination) if header is not None else None,
            )

            if not self._policy.allow(real):
                close_reason, closed_by = "denied", "proxy"
                LOG.info("Connection denied by allowlist listener=%s client=%s peer=%s",
                         self.cfg.name, real, peer_s)
                return

            close_reason, closed_by = await self._relay(conn_id, conn, header)
        except asyncio.CancelledError:
            close_reason, closed_by = "listener_stopped", "proxy"
            raise
        except Exception as e:
            self.errors += 1
            close_reason, closed_by = "proxy_error", "proxy"
            LOG.warning("Connection handler failed listener=%s conn_id=%s: %s",
                        self.cfg.name, conn_id, e, exc_info=True)
            await self.conn_store.set_error(conn_id, str(e))
        finally:
            try:
                conn.close()
                await conn.wait_closed()
            except (OSError, ConnectionError):
                LOG.debug("client close failed listener=%s conn_id=%s", self.cfg.name, conn_id, exc_info=True)
            await self.conn_store.remove(conn_id, close_reason=close_reason, closed_by=closed_by)
            self._conn_sem.release()
            if task is not None:
                self._tasks.discard(task)

    async def _open_upstream(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        host, port = _parse_hostport(self.cfg.upstream)
        connect_to = float(self.cfg.policy.upstream_connect_timeout or 5.0)
        try:
            return await asyncio.wait_for(asyncio.open_connection(host=host, port=port), timeout=connect_to)
        except asyncio.TimeoutError as e:
            raise UpstreamConnectTimeout(f"tcp connect timeout {connect_to}s") from e

    async def _forward_header(self, u_writer: asyncio.StreamWriter, header: Optional[ProxyHeader]) -> None:
        mode = self.cfg.proxy_protocol.forward
        if header is None or mode == "none":
            return
        if mode == "raw":
            u_writer.write(header.raw)
            await u_writer.drain()
            return
        try:
            await write_proxy_line(u_writer, header)
        except ValueError:
            LOG.debug("header not expressible as PROXY v1, not forwarded listener=%s header=%r",
                      self.cfg.name, header)

    async def _relay(
        self,
        conn_id: str,
        conn: ProxyConnection,
        header: Optional[ProxyHeader],
    ) -> Tuple[str, str]:
        """Minimal full-duplex byte tunnel between the client and the upstream."""
        try:
            u_reader, u_writer = await self._open_upstream()
        except (OSError, UpstreamConnectTimeout) as e:
            await self.conn_store.set_error(conn_id, f"upstream connect failed: {e}")
            LOG.info("Upstream TCP connect failed conn_id=%s upstream=%s reason=%s",
                     conn_id, self.cfg.upstream, e)
            return "upstream_connect_fail", "proxy"

        outcome: Dict[str, str] = {}

        async def pump(src_name: str, r, w) -> None:
            while True:
                try:
                    b = await r.read(65536)
                except (ConnectionResetError, BrokenPipeError):
                    outcome.setdefault("reason", f"{src_name}_rst")
                    outcome.setdefault("by", src_name)
                    return
                if not b:
                    outcome.setdefault("reason", f"{src_name}_fin")
                    outcome.setdefault("by", src_name)
                    return
                if src_name == "client":
                    await self.conn_store.add_bytes(conn_id, up=len(b))
                else:
                    await self.conn_store.add_bytes(conn_id, down=len(b))
                try:
                    w.write(b)
                    await w.drain()
                except (ConnectionResetError, BrokenPipeError):
                    dst = "upstream" if src_name == "client" else "client"
                    outcome.setdefault("reason", f"{dst}_broken_pipe")
                    outcome.setdefault("by", dst)
                    return

        try:
            await self._forward_header(u_writer, header)
            t1 = asyncio.ensure_future(pump("client", conn, u_writer))
            t2 = asyncio.ensure_future(pump("upstream", u_reader, conn))
            done, pending = await asyncio.wait({t1, t2}, return_when=asyncio.FIRST_COMPLETED)
            for p in pending:
                p.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for t in done:
                exc = t.exception()
                if exc is not None:
                    raise exc
        finally:
            try:
                u_writer.close()
                await u_writer.wait_closed()
            except (OSError, ConnectionError):
                LOG.debug("upstream close failed conn_id=%s", conn_id, exc_info=True)

        return outcome.get("reason", "completed"), outcome.get("by", "proxy")


class ListenerManager:
    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self.conn_store = ConnectionStore(closed_max=2000)
        self.listeners: Dict[str, ListenerRuntime] = {
            lc.name: ListenerRuntime(lc, self.conn_store)
            for lc in cfg.listeners
        }

    async def start_all(self) -> None:
        for lr in self.listeners.values():
            await lr.start()

    async def stop_all(self) -> None:
        for lr in self.listeners.values():
            await lr.stop()

    async def reload(self, path: str) -> None:
        new_cfg = load_config(path)
        await self.stop_all()
        self.__init__(new_cfg)
        await self.start_all()


# ==========================================================
# TUI (urwid): Connections view
# ==========================================================

def fmt_bytes(n: int) -> str:
    if n < 1024:
        return f"{n}B"
    v = float(n)
    for unit in ("K", "M"):
        v /= 1024.0
        if v < 1024:
            return f"{v:.1f}{unit}"
    return f"{v / 1024.0:.1f}G"


class SelectableRow(urwid.WidgetWrap):
    def selectable(self) -> bool:
        return True

    def keypress(self, size, key):
        return key


class ConnectionsList(urwid.WidgetWrap):
    """
    Connections view list widget.

    show_mode:
      - active: only currently active connections
      - all: active + closed history
      - closed: only closed history
    """
    def __init__(self, manager: ListenerManager):
        self.manager = manager
        self.walker = urwid.SimpleFocusListWalker([])
        self.listbox = urwid.ListBox(self.walker)
        self.show_mode: str = "active"
        self._hdr_mode = urwid.Text(self._mode_label())

        header = urwid.Columns([
            ("fixed", 6, urwid.Text("Age")),
            ("fixed", 14, urwid.Text("Listener")),
            ("fixed", 23, urwid.Text("Peer (socket)")),
            ("fixed", 23, urwid.Text("Client (real)")),
            ("fixed", 7, urwid.Text("PROXY")),
            ("fixed", 15, urwid.Text("Up/Down")),
            ("fixed", 4, urwid.Text("Errs")),
            urwid.Text("State"),
            ("fixed", 12, self._hdr_mode),
        ], dividechars=1)

        frame = urwid.Frame(self.listbox, header=urwid.AttrMap(header, "header"))
        super().__init__(frame)

    def _mode_label(self) -> str:
        return f"Mode: {self.show_mode}"

    def cycle_mode(self) -> str:
        """Cycle display mode: active -> all -> closed -> active."""
        self.show_mode = {"active": "all", "all": "closed"}.get(self.show_mode, "active")
        self._hdr_mode.set_text(self._mode_label())
        return self.show_mode

    async def refresh(self) -> None:
        conns = await self.manager.conn_store.snapshot(include_closed=self.show_mode != "active")
        if self.show_mode == "closed":
            conns = [c for c in conns if c.closed_ts is not None]
        conns.sort(key=lambda c: (c.opened_ts, c.closed_ts or 0.0))

        new_widgets: List[urwid.Widget] = []
        for ci in conns:
            if ci.closed_ts is None:
                state = "open"
            else:
                state = f"{ci.closed_by or '?'}:{ci.close_reason or '?'}"
            if ci.last_error:
                state = f"{state} | {ci.last_error}"

            row = urwid.Columns([
                ("fixed", 6, urwid.Text(f"{ci.age_s()}s"[:6])),
                ("fixed", 14, urwid.Text(ci.listener[:14])),
                ("fixed", 23, urwid.Text(ci.peer[:23])),
                ("fixed", 23, urwid.Text(ci.client[:23])),
                ("fixed", 7, urwid.Text((ci.proxy_version or "-")[:7])),
                ("fixed", 15, urwid.Text(f"{fmt_bytes(ci.bytes_up)}/{fmt_bytes(ci.bytes_down)}"[:15])),
                ("fixed", 4, urwid.Text(str(ci.error_count)[:4])),
                urwid.Text(state[:200]),
            ], dividechars=1)

            base_attr = "row_error" if ci.error_count > 0 else "bg"
            new_widgets.append(urwid.AttrMap(SelectableRow(row), base_attr, focus_map="focus"))

        self.walker[:] = new_widgets


class TuiApp:
    """
    Main TUI controller: Connections view + status footer.

    Hotkeys: Q quit | R reload config | L cycle mode (active/all/closed)
    """
    palette = [
        ("bg", "light gray", "dark blue"),
        ("row_error", "light red", "dark blue"),
        ("header", "black", "light gray"),
        ("focus", "black", "light cyan"),
        ("footer", "black", "light gray"),
    ]

    def __init__(self, manager: ListenerManager, config_path: str, loop: asyncio.AbstractEventLoop):
        self.manager = manager
        self.config_path = config_path
        self.aio_loop = loop

        self.conns = ConnectionsList(manager)
        self.hotkeys = urwid.Text("Q quit | R reload | L cycle mode (active/all/closed)", align="left")
        self.status = urwid.Text("", align="left")
        footer = urwid.Pile([
            urwid.AttrMap(self.hotkeys, "footer"),
            urwid.AttrMap(self.status, "footer"),
        ])
        self.top = urwid.Frame(urwid.AttrMap(self.conns, "bg"), footer=footer)

        self.loop = urwid.MainLoop(
            self.top,
            palette=self.palette,
            event_loop=urwid.AsyncioEventLoop(loop=self.aio_loop),
            unhandled_input=self.on_key,
        )
        self._tick_task: Optional[asyncio.Task] = None

    def set_status(self, msg: str) -> None:
        self.status.set_text(msg)

    def on_key(self, key):
        if key in ("q", "Q"):
            raise urwid.ExitMainLoop()
        if key in ("l", "L"):
            mode = self.conns.cycle_mode()
            self.set_status(f"Connections mode: {mode} (L to cycle)")
            self.aio_loop.create_task(self.conns.refresh())
            return
        if key in ("r", "R"):
            self.aio_loop.create_task(self._reload())
            return

    async def _reload(self):
        self.set_status("Reloading config...")
        try:
            await self.manager.reload(self.config_path)
            self.set_status("Reloaded.")
        except (OSError, ValueError, KeyError, yaml.YAMLError) as e:
            self.set_status(f"Reload failed: {e}")

    async def _tick(self):
        try:
            await self.conns.refresh()
        except Exception:
            log_throttled(
                logging.DEBUG,
                key="tui_tick_refresh_failed",
                msg="TUI refresh tick failed",
                interval_s=5.0,
                exc_info=True,
            )
        self.loop.set_alarm_in(0.5, lambda loop, data: self._schedule_tick())

    def _schedule_tick(self) -> None:
        self._tick_task = self.aio_loop.create_task(self._tick())

    def run(self):
        self._schedule_tick()
        try:
            self.loop.run()
        finally:
            if self._tick_task is not None:
                self._tick_task.cancel()
            try:
                self.aio_loop.run_until_complete(self.manager.stop_all())
            except Exception:
                LOG.error("manager.stop_all failed during TUI shutdown", exc_info=True)

            pending = [t for t in asyncio.all_tasks(loop=self.aio_loop) if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                self.aio_loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


# ==========================================================
# CLI / Modes
# ==========================================================

async def run_headless(config_path: str):
    cfg = load_config(config_path)
    manager = ListenerManager(cfg)
    await manager.start_all()

    stop_ev = asyncio.Event()

    def _sig(*_):
        stop_ev.set()

    loop = asyncio.get_running_loop()
    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, _sig)
        except NotImplementedError:
            pass

    await stop_ev.wait()
    await manager.stop_all()


def run_tui_sync(config_path: str, log_path: Optional[str] = None):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Redirect stderr next to the log file while the TUI owns the terminal.
    log_dir = os.path.dirname(os.path.abspath(log_path)) if log_path else os.getcwd()
    err_path = os.path.join(log_dir, "tui-stderr.log")
    old_stderr = sys.stderr
    sys.stderr = open(err_path, "a", encoding="utf-8")

    def _loop_exc_handler(_loop, context):
        LOG.error("asyncio: %s", context.get("message", "asyncio exception"),
                  exc_info=context.get("exception"))

    loop.set_exception_handler(_loop_exc_handler)

    try:
        cfg = load_config(config_path)
        manager = ListenerManager(cfg)
        loop.run_until_complete(manager.start_all())
        TuiApp(manager, config_path, loop=loop).run()
    finally:
        loop.close()
        sys.stderr.close()
        sys.stderr = old_stderr


def cmd_check(config_path: str) -> int:
    try:
        _ = load_config(config_path)
    except (OSError, ValueError, KeyError, TypeError, yaml.YAMLError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    print("OK")
    return 0


def main():
    default_config = os.path.join(os.getcwd(), "config.yaml")
    default_log = os.path.join(os.getcwd(), "realaddr.log")

    p = argparse.ArgumentParser(
        prog="realaddr",
        description=(
            "TCP relay that recovers the real client address from PROXY protocol (v1/v2) headers.\n\n"
            "Default mode: TUI (Connections view).\n"
            "Use --headless to run without UI (daemon/service style).\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("--config", default=default_config,
                   help=f"Path to config YAML (default: {default_config})")
    p.add_argument("--log", default=default_log,
                   help=f"Path to log file (default: {default_log})")
    p.add_argument("--log-level", default="INFO",
                   help="Log level: DEBUG, INFO, WARNING, ERROR (default: INFO)")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    g = p.add_mutually_exclusive_group()
    g.add_argument("--headless", action="store_true", help="Run headless (no TUI).")
    g.add_argument("--check", action="store_true", help="Validate config and exit.")
    g.add_argument("--dump-example-config", action="store_true", help="Print example config and exit.")

    args = p.parse_args()

    if args.dump_example_config:
        print(dump_example_config())
        return

    if args.check:
        raise SystemExit(cmd_check(args.config))

    setup_logging(args.log, args.log_level)

    if args.headless:
        asyncio.run(run_headless(args.config))
        return

    run_tui_sync(args.config, log_path=args.log)


if __name__ == "__main__":
    main()
