from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Iterator

from cryptography import x509
from OpenSSL import SSL, crypto

from .utils import is_ip_literal

logger = logging.getLogger(__name__)

TLS_VERSIONS = {
    "SSLv3": SSL.SSL3_VERSION,
    "TLSv1": SSL.TLS1_VERSION,
    "TLSv1_1": SSL.TLS1_1_VERSION,
    "TLSv1_2": SSL.TLS1_2_VERSION,
    "TLSv1_3": SSL.TLS1_3_VERSION,
}

# close_notify exchange with broken servers must not hold the probe open
_CLOSE_TIMEOUT = 1.0

_READ_SIZE = 16384


class ConnectorError(Exception):
    """The TCP/TLS session to the target could not be established."""


class ConnectTimeout(ConnectorError):
    pass


class ConnectFailure(ConnectorError):
    pass


def build_client_context(min_version: str = "TLSv1", max_version: str = "TLSv1_2") -> SSL.Context:
    """
    Client context for scanning: no peer verification during the handshake,
    permissive protocol range and cipher list. Verification happens later,
    on the extracted chain.
    """
    try:
        lo, hi = TLS_VERSIONS[min_version], TLS_VERSIONS[max_version]
    except KeyError as e:
        raise ValueError(f"unknown TLS version: {e.args[0]}") from None

    ctx = SSL.Context(SSL.TLS_CLIENT_METHOD)
    ctx.set_verify(SSL.VERIFY_NONE, lambda *args: True)
    ctx.set_min_proto_version(lo)
    ctx.set_max_proto_version(hi)
    try:
        ctx.set_cipher_list(b"ALL:@SECLEVEL=0")
    except SSL.Error:
        # OpenSSL builds without security levels
        logger.debug("could not widen cipher list, keeping OpenSSL defaults")
    return ctx


def _ssl_error_message(e: SSL.Error) -> str:
    errors = e.args[0] if e.args else None
    if isinstance(errors, list) and errors:
        return "tls: " + ", ".join(str(err[-1]) for err in errors)
    return str(e) or e.__class__.__name__


@contextlib.contextmanager
def _connector_errors() -> Iterator[None]:
    try:
        yield
    except (asyncio.TimeoutError, TimeoutError) as e:
        raise ConnectTimeout("IO timeout") from e
    except SSL.Error as e:
        raise ConnectFailure(_ssl_error_message(e)) from e
    except (OSError, ValueError, OverflowError) as e:
        raise ConnectFailure(str(e) or e.__class__.__name__) from e


def _client_connection(context: SSL.Context, hostname: str) -> SSL.Connection:
    # no socket: records go through memory BIOs and the asyncio streams
    conn = SSL.Connection(context, None)
    name = hostname.strip().rstrip(".")
    if name and not is_ip_literal(name):
        try:
            conn.set_tlsext_host_name(name.encode("idna"))
        except UnicodeError:
            logger.debug("not sending SNI for %r", hostname)
    conn.set_connect_state()
    return conn


def _pending_output(conn: SSL.Connection) -> bytes:
    chunks = []
    while True:
        try:
            chunks.append(conn.bio_read(_READ_SIZE))
        except SSL.WantReadError:
            return b"".join(chunks)


async def _flush(conn: SSL.Connection, writer: asyncio.StreamWriter) -> None:
    data = _pending_output(conn)
    if data:
        writer.write(data)
        await writer.drain()


async def _handshake(conn: SSL.Connection, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while True:
        try:
            conn.do_handshake()
        except SSL.WantReadError:
            await _flush(conn, writer)
            data = await reader.read(_READ_SIZE)
            if not data:
                raise ConnectFailure("EOF")
            conn.bio_write(data)
        else:
            await _flush(conn, writer)
            return


def _peer_chain_der(conn: SSL.Connection) -> list[bytes]:
    leaf = conn.get_peer_certificate()
    leaf_der = crypto.dump_certificate(crypto.FILETYPE_ASN1, leaf) if leaf is not None else None
    chain_ders = [crypto.dump_certificate(crypto.FILETYPE_ASN1, c) for c in conn.get_peer_cert_chain() or []]

    # Normalize: leaf first, no duplicates of it
    ders: list[bytes] = []
    if leaf_der:
        ders.append(leaf_der)
    for d in chain_ders:
        if d and d != leaf_der:
            ders.append(d)
    return ders


async def fetch_peer_chain(
    host: str,
    port: int,
    *,
    hostname: str,
    timeout: float,
    context: SSL.Context,
) -> list[x509.Certificate]:
    """
    Dial host:port, complete a TLS handshake presenting `hostname` as SNI and
    return the peer's certificates, leaf first, in the order presented.

    `timeout` bounds the dial and the handshake together. Raises
    ConnectTimeout or ConnectFailure.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    with _connector_errors():
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)

    try:
        with _connector_errors():
            conn = _client_connection(context, hostname)
            await asyncio.wait_for(_handshake(conn, reader, writer), timeout=max(deadline - loop.time(), 0))
        ders = _peer_chain_der(conn)

        with contextlib.suppress(SSL.Error):
            conn.shutdown()
            writer.write(_pending_output(conn))
    finally:
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=_CLOSE_TIMEOUT)
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug("%s:%s: unclean close: %r", host, port, e)

    try:
        return [x509.load_der_x509_certificate(d) for d in ders]
    except ValueError as e:
        # a TLS client would abort the handshake on this
        raise ConnectFailure(f"x509: malformed certificate: {e}") from e
