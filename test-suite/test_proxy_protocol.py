#!/usr/bin/env python3
import asyncio
import importlib.util
import ipaddress
import pathlib
import socket
import sys
import time
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
MODULE_PATH = ROOT / "realaddr.py"

if "realaddr" in sys.modules:
    RA = sys.modules["realaddr"]
else:
    SPEC = importlib.util.spec_from_file_location("realaddr", MODULE_PATH)
    if SPEC is None or SPEC.loader is None:
        raise RuntimeError(f"cannot load module from {MODULE_PATH}")
    RA = importlib.util.module_from_spec(SPEC)
    sys.modules[SPEC.name] = RA
    SPEC.loader.exec_module(RA)


AFP = RA.AddressFamilyAndProtocol

FIXTURE_TCP4 = b"PROXY TCP4 127.0.0.1 127.0.0.1 65533 65533\r\n"
FIXTURE_TCP6 = (
    b"PROXY TCP6 2001:4801:7817:72:d4d9:211d:ff10:1631 "
    b"2001:4801:7817:72:d4d9:211d:ff10:1631 65533 65533\r\n"
)
FIXTURE_TCP4_V2 = (
    b"\x0D\x0A\x0D\x0A\x00\x0D\x0A\x51\x55\x49\x54\x0A\x21\x11\x00\x0C"
    b"\x7F\x00\x00\x01\x7F\x00\x00\x01\xFF\xFD\xFF\xFD"
)
V6_ADDR = "2001:4801:7817:72:d4d9:211d:ff10:1631"


def build_proxy_v2_header(ver_cmd: int, fam: int, payload: bytes, length: int = None) -> bytes:
    plen = len(payload) if length is None else length
    return RA.PROXY_V2_SIGNATURE + bytes([ver_cmd, fam]) + plen.to_bytes(2, "big") + payload


def build_proxy_v2_ipv4_header(
    src_ip: str,
    dst_ip: str,
    src_port: int,
    dst_port: int,
) -> bytes:
    payload = (
        socket.inet_aton(src_ip)
        + socket.inet_aton(dst_ip)
        + int(src_port).to_bytes(2, "big")
        + int(dst_port).to_bytes(2, "big")
    )
    return build_proxy_v2_header(0x21, 0x11, payload)  # version=2, command=PROXY, INET/STREAM


def build_proxy_v2_ipv6_header(src_ip: str, dst_ip: str, src_port: int, dst_port: int) -> bytes:
    payload = (
        ipaddress.IPv6Address(src_ip).packed
        + ipaddress.IPv6Address(dst_ip).packed
        + int(src_port).to_bytes(2, "big")
        + int(dst_port).to_bytes(2, "big")
    )
    return build_proxy_v2_header(0x21, 0x21, payload)


def _make_reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    r = asyncio.StreamReader()
    r.feed_data(data)
    if eof:
        r.feed_eof()
    return r


def _make_stream(data: bytes, eof: bool = True):
    return RA.BufferedStream(_make_reader(data, eof=eof))


class _CollectingWriter:
    def __init__(self):
        self.data = bytearray()
        self.drained = 0

    def write(self, b: bytes) -> None:
        self.data.extend(b)

    async def drain(self) -> None:
        self.drained += 1


class TestAddressFamilyAndProtocol(unittest.TestCase):
    def test_tcp_over_ipv4(self):
        ap = AFP.TCP_OVER_IPV4
        self.assertEqual(int(ap), 0x11)
        self.assertTrue(ap.is_ipv4)
        self.assertTrue(ap.is_stream)
        self.assertFalse(ap.is_ipv6)
        self.assertFalse(ap.is_unix)
        self.assertFalse(ap.is_datagram)
        self.assertFalse(ap.is_unspec)
        self.assertTrue(ap.is_supported)

    def test_datagram_members(self):
        for ap in (AFP.UDP_OVER_IPV4, AFP.UDP_OVER_IPV6, AFP.UNIX_DGRAM):
            self.assertTrue(ap.is_datagram, ap)
            self.assertFalse(ap.is_stream, ap)
        self.assertTrue(AFP.UDP_OVER_IPV6.is_ipv6)
        self.assertTrue(AFP.UNIX_DGRAM.is_unix)

    def test_unix_stream(self):
        self.assertTrue(AFP.UNIX_STREAM.is_unix)
        self.assertTrue(AFP.UNIX_STREAM.is_stream)

    def test_unspec(self):
        self.assertTrue(AFP.UNSPEC.is_unspec)
        self.assertFalse(AFP.UNSPEC.is_supported)
        # family set but transport unspecified
        self.assertTrue(AFP(0x10).is_unspec)
        self.assertTrue(AFP(0x10).is_ipv4)
        self.assertFalse(AFP(0x10).is_supported)

    def test_unknown_nibbles_yield_false(self):
        ap = AFP(0x44)
        self.assertFalse(ap.is_ipv4 or ap.is_ipv6 or ap.is_unix)
        self.assertFalse(ap.is_stream or ap.is_datagram)
        self.assertFalse(ap.is_unspec)
        self.assertFalse(ap.is_supported)
        self.assertIn("0x44", repr(ap))

    def test_supported_set(self):
        self.assertEqual(
            {int(x) for x in RA.SUPPORTED_PROTOCOLS},
            {0x11, 0x12, 0x21, 0x22, 0x31, 0x32},
        )

    def test_out_of_range(self):
        with self.assertRaises(ValueError):
            AFP(0x100)
        with self.assertRaises(ValueError):
            AFP(-1)

    def test_v1_tags(self):
        self.assertEqual(AFP.from_v1_tag("TCP4"), AFP.TCP_OVER_IPV4)
        self.assertEqual(AFP.from_v1_tag("tcp6"), AFP.TCP_OVER_IPV6)
        self.assertEqual(AFP.from_v1_tag("UNKNOWN"), AFP.UNSPEC)
        self.assertEqual(AFP.from_v1_tag("SCTP"), AFP.UNSPEC)
        self.assertEqual(AFP.TCP_OVER_IPV4.v1_tag, "TCP4")
        self.assertEqual(AFP.TCP_OVER_IPV6.v1_tag, "TCP6")
        self.assertEqual(AFP.UDP_OVER_IPV4.v1_tag, "UNKNOWN")
        self.assertEqual(repr(AFP.UNIX_STREAM), "AddressFamilyAndProtocol.UNIX_STREAM")


class TestEndpoints(unittest.TestCase):
    def test_ipv4_endpoint_from_literal(self):
        ep = RA.IPv4Endpoint("192.0.2.1", 443)
        self.assertEqual(ep.address, ipaddress.IPv4Address("192.0.2.1"))
        self.assertEqual(str(ep), "192.0.2.1:443")

    def test_ipv6_endpoint_str(self):
        ep = RA.IPv6Endpoint("::1", 8080)
        self.assertEqual(str(ep), "[::1]:8080")

    def test_family_enforced_at_construction(self):
        with self.assertRaises(RA.AddressFamilyMismatch):
            RA.IPv4Endpoint("::1", 1)
        with self.assertRaises(RA.AddressFamilyMismatch):
            RA.IPv6Endpoint("10.0.0.1", 1)

    def test_literal_only(self):
        with self.assertRaises(RA.InvalidHeader):
            RA.ip_endpoint("localhost", 80)

    def test_port_range(self):
        with self.assertRaises(RA.InvalidPort):
            RA.IPv4Endpoint("10.0.0.1", 65536)
        with self.assertRaises(RA.InvalidPort):
            RA.IPv4Endpoint("10.0.0.1", -1)

    def test_unix_path_length(self):
        self.assertEqual(RA.UnixEndpoint("/run/app.sock").path, b"/run/app.sock")
        RA.UnixEndpoint(b"x" * 108)
        with self.assertRaises(RA.InvalidHeader):
            RA.UnixEndpoint(b"x" * 109)

    def test_endpoint_from_sockaddr(self):
        self.assertEqual(RA.endpoint_from_sockaddr(("127.0.0.1", 5000)), RA.IPv4Endpoint("127.0.0.1", 5000))
        self.assertEqual(RA.endpoint_from_sockaddr(("::1", 5000, 0, 0)), RA.IPv6Endpoint("::1", 5000))
        self.assertEqual(RA.endpoint_from_sockaddr("/tmp/s"), RA.UnixEndpoint(b"/tmp/s"))
        self.assertIsNone(RA.endpoint_from_sockaddr(None))

    def test_header_rejects_mismatched_endpoints(self):
        with self.assertRaises(RA.AddressFamilyMismatch):
            RA.ProxyHeader(
                protocol=AFP.TCP_OVER_IPV4,
                source=RA.IPv6Endpoint("::1", 1),
                destination=RA.IPv4Endpoint("10.0.0.1", 2),
            )


class TestParseV1(unittest.IsolatedAsyncioTestCase):
    async def test_parse_tcp4(self):
        s = _make_stream(FIXTURE_TCP4)
        h = await RA.consume_proxy_header(s)
        self.assertEqual(h.protocol, AFP.TCP_OVER_IPV4)
        self.assertEqual(h.source, RA.IPv4Endpoint("127.0.0.1", 65533))
        self.assertEqual(h.destination, RA.IPv4Endpoint("127.0.0.1", 65533))
        self.assertEqual(h.version, 1)
        self.assertEqual(h.command, RA.Command.PROXY)
        self.assertEqual(h.raw, FIXTURE_TCP4)
        self.assertEqual(await s.read(), b"")

    async def test_parse_tcp6(self):
        h = await RA.consume_proxy_header(_make_stream(FIXTURE_TCP6))
        self.assertEqual(h.protocol, AFP.TCP_OVER_IPV6)
        self.assertEqual(h.source, RA.IPv6Endpoint(V6_ADDR, 65533))
        self.assertEqual(h.destination_port, 65533)

    async def test_consume_header_only(self):
        hdr = b"PROXY TCP4 203.0.113.10 192.0.2.10 54321 443\r\n"
        payload = b"\x16\x03\x01test-clienthello\r\nmore"
        s = _make_stream(hdr + payload)

        h = await RA.consume_proxy_header(s)
        self.assertEqual(str(h.source_address), "203.0.113.10")
        self.assertEqual(h.source_port, 54321)
        self.assertEqual(str(h.destination_address), "192.0.2.10")
        self.assertEqual(h.destination_port, 443)
        self.assertEqual(await s.read(), payload)

    async def test_tag_is_case_insensitive(self):
        h = await RA.consume_proxy_header(_make_stream(b"PROXY tcp4 10.0.0.1 10.0.0.2 1 2\r\n"))
        self.assertEqual(h.protocol, AFP.TCP_OVER_IPV4)

    async def test_unknown_tag_parses_addresses_generically(self):
        h = await RA.consume_proxy_header(_make_stream(b"PROXY UNKNOWN 10.0.0.1 ::1 1 2\r\n"))
        self.assertEqual(h.protocol, AFP.UNSPEC)
        self.assertIsInstance(h.source, RA.IPv4Endpoint)
        self.assertIsInstance(h.destination, RA.IPv6Endpoint)

    async def test_missing_crlf(self):
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(_make_stream(b"PROXY TCP4 127.0.0.1 127.0.0.1 65533 65533"))

    async def test_lf_only_terminator(self):
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(_make_stream(b"PROXY TCP4 127.0.0.1 127.0.0.1 65533 65533\n"))

    async def test_not_enough_fields(self):
        for line in (b"PROXY \r\n", b"PROXY TCP4 127.0.0.1 127.0.0.1 65533\r\n"):
            with self.subTest(line=line):
                with self.assertRaises(RA.InvalidHeader):
                    await RA.consume_proxy_header(_make_stream(line))

    async def test_too_many_fields(self):
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(_make_stream(b"PROXY TCP4 1.1.1.1 2.2.2.2 1 2 3\r\n"))

    async def test_line_too_long(self):
        line = b"PROXY TCP4 " + b"1" * 200 + b"\r\n"
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(_make_stream(line))

    async def test_family_mismatch(self):
        bad = [
            b"PROXY TCP6 127.0.0.1 127.0.0.1 65533 65533\r\n",
            b"PROXY TCP4 " + V6_ADDR.encode() + b" " + V6_ADDR.encode() + b" 65533 65533\r\n",
            b"PROXY TCP4 127.0.0.1 ::1 65533 65533\r\n",
        ]
        for line in bad:
            with self.subTest(line=line):
                with self.assertRaises(RA.AddressFamilyMismatch):
                    await RA.consume_proxy_header(_make_stream(line))

    async def test_malformed_address(self):
        for addr in (b"localhost", b"256.0.0.1", b"1.2.3"):
            with self.subTest(addr=addr):
                with self.assertRaises(RA.InvalidHeader):
                    await RA.consume_proxy_header(_make_stream(b"PROXY TCP4 " + addr + b" 10.0.0.1 1 2\r\n"))

    async def test_invalid_port(self):
        for sport in (b"BAD", b"65536", b"-1", b"+80", b"", b"99999999"):
            with self.subTest(port=sport):
                with self.assertRaises(RA.InvalidPort):
                    await RA.consume_proxy_header(
                        _make_stream(b"PROXY TCP4 203.0.113.10 192.0.2.10 " + sport + b" 443\r\n")
                    )

    async def test_errors_are_value_errors(self):
        bad = b"PROXY TCP4 203.0.113.10 192.0.2.10 BAD 443\r\npayload"
        with self.assertRaises(ValueError):
            await RA.consume_proxy_header(_make_stream(bad))

    async def test_non_ascii(self):
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(_make_stream("PROXY TCP4 1.1.1.1 2.2.2.2 1 2é\r\n".encode()))


class TestParseV2(unittest.IsolatedAsyncioTestCase):
    async def test_parse_tcp4(self):
        s = _make_stream(FIXTURE_TCP4_V2)
        h = await RA.consume_proxy_header(s)
        self.assertEqual(h.protocol, AFP.TCP_OVER_IPV4)
        self.assertEqual(h.source, RA.IPv4Endpoint("127.0.0.1", 65533))
        self.assertEqual(h.destination, RA.IPv4Endpoint("127.0.0.1", 65533))
        self.assertEqual(h.version, 2)
        self.assertEqual(h.raw, FIXTURE_TCP4_V2)

    async def test_consume_header_only(self):
        hdr = build_proxy_v2_ipv4_header("198.51.100.20", "192.0.2.15", 42424, 8443)
        payload = b"\x16\x03\x01hello"
        s = _make_stream(hdr + payload)

        h = await RA.consume_proxy_header(s)
        self.assertEqual(h.source, RA.IPv4Endpoint("198.51.100.20", 42424))
        self.assertEqual(h.destination, RA.IPv4Endpoint("192.0.2.15", 8443))
        self.assertEqual(h.raw, hdr)
        self.assertEqual(await s.read(), payload)

    async def test_parse_tcp6(self):
        hdr = build_proxy_v2_ipv6_header(V6_ADDR, "2001:db8::1", 65533, 443)
        h = await RA.consume_proxy_header(_make_stream(hdr))
        self.assertEqual(h.protocol, AFP.TCP_OVER_IPV6)
        self.assertEqual(h.source, RA.IPv6Endpoint(V6_ADDR, 65533))
        self.assertEqual(h.destination, RA.IPv6Endpoint("2001:db8::1", 443))

    async def test_udp_over_ipv4_is_decoded(self):
        hdr = build_proxy_v2_ipv4_header("10.0.0.1", "10.0.0.2", 53, 5353)
        hdr = hdr[:13] + b"\x12" + hdr[14:]
        h = await RA.consume_proxy_header(_make_stream(hdr))
        self.assertEqual(h.protocol, AFP.UDP_OVER_IPV4)
        self.assertTrue(h.protocol.is_datagram)

    async def test_parse_unix(self):
        payload = b"/run/src.sock".ljust(108, b"\x00") + b"/run/dst.sock".ljust(108, b"\x00")
        s = _make_stream(build_proxy_v2_header(0x21, 0x31, payload) + b"after")
        h = await RA.consume_proxy_header(s)
        self.assertEqual(h.protocol, AFP.UNIX_STREAM)
        self.assertEqual(h.source, RA.UnixEndpoint(b"/run/src.sock"))
        self.assertEqual(h.destination_address, b"/run/dst.sock")
        self.assertIsNone(h.source_port)
        self.assertEqual(await s.read(), b"after")

    async def test_same_addresses_as_v1(self):
        v1 = await RA.consume_proxy_header(_make_stream(b"PROXY TCP4 203.0.113.7 192.0.2.1 5555 443\r\n"))
        v2 = await RA.consume_proxy_header(
            _make_stream(build_proxy_v2_ipv4_header("203.0.113.7", "192.0.2.1", 5555, 443))
        )
        self.assertEqual(v1.source, v2.source)
        self.assertEqual(v1.destination, v2.destination)
        self.assertEqual(v1.protocol, v2.protocol)

    async def test_local_command_skips_block(self):
        s = _make_stream(build_proxy_v2_header(0x20, 0x00, b"abcd") + b"payload")
        self.assertIsNone(await RA.consume_proxy_header(s))
        self.assertEqual(await s.read(), b"payload")

    async def test_local_command_with_addresses_skips_block(self):
        hdr = build_proxy_v2_ipv4_header("10.0.0.1", "10.0.0.2", 1, 2)
        hdr = hdr[:12] + b"\x20" + hdr[13:]
        s = _make_stream(hdr + b"payload")
        self.assertIsNone(await RA.consume_proxy_header(s))
        self.assertEqual(await s.read(), b"payload")

    async def test_unsupported_protocol_skips_block(self):
        s = _make_stream(build_proxy_v2_header(0x21, 0xFF, b"xyz") + b"tail")
        with self.assertRaises(RA.UnsupportedProtocol):
            await RA.consume_proxy_header(s)
        self.assertEqual(await s.read(), b"tail")

    async def test_proxy_command_with_unspec_family(self):
        s = _make_stream(build_proxy_v2_header(0x21, 0x00, b"") + b"tail")
        with self.assertRaises(RA.UnsupportedProtocol):
            await RA.consume_proxy_header(s)
        self.assertEqual(await s.read(), b"tail")

    async def test_ipv4_length_mismatch_consumes_length(self):
        for plen in (10, 16):
            with self.subTest(length=plen):
                s = _make_stream(build_proxy_v2_header(0x21, 0x11, b"\x01" * plen) + b"tail")
                with self.assertRaises(RA.InvalidHeader):
                    await RA.consume_proxy_header(s)
                self.assertEqual(await s.read(), b"tail")

    async def test_ipv6_length_mismatch(self):
        s = _make_stream(build_proxy_v2_header(0x21, 0x21, b"\x00" * 12) + b"tail")
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(s)
        self.assertEqual(await s.read(), b"tail")

    async def test_unix_length_mismatch(self):
        s = _make_stream(build_proxy_v2_header(0x21, 0x31, b"\x00" * 218) + b"tail")
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(s)
        self.assertEqual(await s.read(), b"tail")

    async def test_tlvs_skipped_when_allowed(self):
        hdr = build_proxy_v2_ipv4_header("198.51.100.1", "192.0.2.1", 40001, 443)
        tlv = b"\x04\x00\x04abcd"  # PP2_TYPE_NOOP, len 4
        plen = 12 + len(tlv)
        hdr = hdr[:14] + plen.to_bytes(2, "big") + hdr[16:] + tlv
        s = _make_stream(hdr + b"payload")

        h = await RA.consume_proxy_header(s, allow_tlvs=True)
        self.assertEqual(h.source, RA.IPv4Endpoint("198.51.100.1", 40001))
        self.assertEqual(h.raw, hdr)
        self.assertEqual(await s.read(), b"payload")

    async def test_short_length_rejected_even_with_tlvs(self):
        s = _make_stream(build_proxy_v2_header(0x21, 0x11, b"\x00" * 8))
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(s, allow_tlvs=True)

    async def test_unsupported_version(self):
        s = _make_stream(RA.PROXY_V2_SIGNATURE + b"\x13\x11\x00")
        with self.assertRaises(RA.UnsupportedVersion):
            await RA.consume_proxy_header(s)

    async def test_invalid_command(self):
        s = _make_stream(RA.PROXY_V2_SIGNATURE + b"\x23\x11\x00")
        with self.assertRaises(RA.InvalidHeader):
            await RA.consume_proxy_header(s)

    async def test_truncated(self):
        cases = [
            RA.PROXY_V2_SIGNATURE,
            RA.PROXY_V2_SIGNATURE + b"\x21\xFF\x00",
            FIXTURE_TCP4_V2[:-3],
        ]
        for data in cases:
            with self.subTest(data=data):
                with self.assertRaises(RA.InvalidHeader):
                    await RA.consume_proxy_header(_make_stream(data))


class TestNoHeader(unittest.IsolatedAsyncioTestCase):
    async def test_no_spoon(self):
        s = _make_stream(b"There is no spoon.")
        self.assertIsNone(await RA.consume_proxy_header(s))
        self.assertEqual(await s.read(), b"There is no spoon.")

    async def test_http_payload_untouched(self):
        payload = b"POST /x HTTP/1.1\r\nHost: example\r\n\r\nabc"
        s = _make_stream(payload)
        self.assertIsNone(await RA.consume_proxy_header(s))
        self.assertEqual(await s.read(), payload)

    async def test_empty_stream(self):
        s = _make_stream(b"")
        self.assertIsNone(await RA.consume_proxy_header(s))
        self.assertTrue(s.at_eof())

    async def test_partial_signatures_at_eof(self):
        for data in (b"PRO", b"\r\n\r\n\x00", b"PROX"):
            with self.subTest(data=data):
                s = _make_stream(data)
                self.assertIsNone(await RA.consume_proxy_header(s))
                self.assertEqual(await s.read(), data)

    async def test_diverging_v2_prefix(self):
        s = _make_stream(b"\r\n\r\nGET / HTTP/1.0\r\n")
        self.assertIsNone(await RA.consume_proxy_header(s))
        self.assertEqual(await s.read(), b"\r\n\r\nGET / HTTP/1.0\r\n")

    async def test_short_greeting_does_not_wait_for_more(self):
        # no EOF: a sniff that insisted on 12 bytes would hang here
        s = _make_stream(b"hi\n", eof=False)
        self.assertIsNone(await asyncio.wait_for(RA.consume_proxy_header(s), timeout=1.0))
        self.assertEqual(await s.readexactly(3), b"hi\n")


class TestReadDeadline(unittest.IsolatedAsyncioTestCase):
    async def test_deadline_bounds_header_read(self):
        s = _make_stream(b"PROXY TCP4 10.0.0.1", eof=False)
        s.set_read_deadline(time.monotonic() + 0.05)
        with self.assertRaises(asyncio.TimeoutError):
            await RA.consume_proxy_header(s)

    async def test_deadline_in_the_past(self):
        s = _make_stream(b"", eof=False)
        s.set_read_deadline(time.monotonic() - 1)
        with self.assertRaises(asyncio.TimeoutError):
            await s.peek(1)

    async def test_cleared_deadline(self):
        r = _make_reader(b"", eof=False)
        s = RA.BufferedStream(r)
        s.set_read_deadline(time.monotonic() - 1)
        s.set_read_deadline(None)
        asyncio.get_running_loop().call_later(0.02, r.feed_data, b"late")
        self.assertEqual(await s.peek(4), b"late")


class TestBufferedStream(unittest.IsolatedAsyncioTestCase):
    async def test_peek_does_not_consume(self):
        s = _make_stream(b"abcdef")
        self.assertEqual(await s.peek(3), b"abc")
        self.assertEqual(await s.peek(10), b"abcdef")
        await s.discard(2)
        self.assertEqual(await s.readexactly(2), b"cd")
        self.assertEqual(await s.read(), b"ef")

    async def test_readuntil_limit(self):
        s = _make_stream(b"0123456789\r\n")
        with self.assertRaises(asyncio.LimitOverrunError):
            await s.readuntil(b"\r\n", limit=5)
        self.assertEqual(await s.readuntil(b"\r\n", limit=12), b"0123456789\r\n")

    async def test_readline_and_eof(self):
        s = _make_stream(b"one\ntwo")
        self.assertEqual(await s.readline(), b"one\n")
        self.assertEqual(await s.readline(), b"two")
        self.assertTrue(s.at_eof())

    async def test_discard_short(self):
        s = _make_stream(b"ab")
        with self.assertRaises(asyncio.IncompleteReadError):
            await s.discard(3)


class TestFormatProxyLine(unittest.IsolatedAsyncioTestCase):
    async def test_format_tcp4(self):
        h = RA.ProxyHeader(
            protocol=AFP.TCP_OVER_IPV4,
            source=RA.IPv4Endpoint("127.0.0.1", 65533),
            destination=RA.IPv4Endpoint("127.0.0.1", 65533),
        )
        self.assertEqual(RA.format_proxy_line(h), FIXTURE_TCP4)

    async def test_format_tcp6_without_brackets(self):
        h = RA.ProxyHeader(
            protocol=AFP.TCP_OVER_IPV6,
            source=RA.IPv6Endpoint(V6_ADDR, 65533),
            destination=RA.IPv6Endpoint(V6_ADDR, 65533),
        )
        self.assertEqual(RA.format_proxy_line(h), FIXTURE_TCP6)

    async def test_format_unknown(self):
        h = RA.ProxyHeader(
            protocol=AFP.UDP_OVER_IPV4,
            source=RA.IPv4Endpoint("10.0.0.1", 53),
            destination=RA.IPv4Endpoint("10.0.0.2", 53),
        )
        self.assertEqual(RA.format_proxy_line(h), b"PROXY UNKNOWN 10.0.0.1 10.0.0.2 53 53\r\n")

    async def test_round_trip(self):
        headers = [
            RA.ProxyHeader(AFP.TCP_OVER_IPV4, RA.IPv4Endpoint("0.0.0.0", 0), RA.IPv4Endpoint("255.255.255.255", 65535)),
            RA.ProxyHeader(AFP.TCP_OVER_IPV6, RA.IPv6Endpoint("::1", 1), RA.IPv6Endpoint("2001:db8::2", 2)),
            RA.ProxyHeader(AFP.UNSPEC, RA.IPv4Endpoint("10.1.1.1", 80), RA.IPv6Endpoint("fe80::1", 81)),
        ]
        for h in headers:
            with self.subTest(header=h):
                decoded = await RA.consume_proxy_header(_make_stream(RA.format_proxy_line(h)))
                self.assertEqual(decoded, h)

    async def test_round_trip_from_v2(self):
        v2 = await RA.consume_proxy_header(_make_stream(FIXTURE_TCP4_V2))
        v1 = await RA.consume_proxy_header(_make_stream(RA.format_proxy_line(v2)))
        self.assertEqual((v1.protocol, v1.source, v1.destination), (v2.protocol, v2.source, v2.destination))

    async def test_unix_is_usage_error(self):
        h = RA.ProxyHeader(AFP.UNIX_STREAM, RA.UnixEndpoint(b"/a"), RA.UnixEndpoint(b"/b"), version=2)
        with self.assertRaises(ValueError):
            RA.format_proxy_line(h)

    async def test_write_proxy_line(self):
        w = _CollectingWriter()
        h = RA.ProxyHeader(AFP.TCP_OVER_IPV4, RA.IPv4Endpoint("203.0.113.1", 40000), RA.IPv4Endpoint("192.0.2.1", 443))
        await RA.write_proxy_line(w, h)
        self.assertEqual(bytes(w.data), b"PROXY TCP4 203.0.113.1 192.0.2.1 40000 443\r\n")
        self.assertEqual(w.drained, 1)


if __name__ == "__main__":
    unittest.main()
