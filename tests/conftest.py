from __future__ import annotations

import datetime
import ipaddress
import socket
import ssl
import threading
from dataclasses import dataclass
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


@dataclass
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    @property
    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def make_cert(
    cn: str | None,
    *,
    issuer: Issued | None = None,
    ca: bool = False,
    dns: list[str] | None = None,
    ips: list[str] | None = None,
    not_before: datetime.datetime | None = None,
    not_after: datetime.datetime | None = None,
) -> Issued:
    """Build a certificate the webpki profile accepts. issuer=None self-signs."""
    key = ec.generate_private_key(ec.SECP256R1())
    if cn is None:
        subject = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "certpump tests")])
    else:
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    signing_key = issuer.key if issuer else key

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or _now() - datetime.timedelta(days=1))
        .not_valid_after(not_after or _now() + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    if not ca:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
    names: list[x509.GeneralName] = [x509.DNSName(n) for n in dns or []]
    names += [x509.IPAddress(ipaddress.ip_address(i)) for i in ips or []]
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)

    return Issued(cert=builder.sign(signing_key, hashes.SHA256()), key=key)


@dataclass
class PKI:
    root: Issued
    other_root: Issued
    intermediate: Issued
    leaf: Issued          # localhost, issued by intermediate
    direct_leaf: Issued   # localhost, issued by root
    self_signed: Issued   # localhost, issuer == subject
    expired_leaf: Issued  # localhost, issued by root, already expired
    stale_ca: Issued      # expired CA issued by root, off the leaf's path


@pytest.fixture(scope="session")
def pki() -> PKI:
    root = make_cert("certpump test root", ca=True)
    intermediate = make_cert("certpump test intermediate", issuer=root, ca=True)
    return PKI(
        root=root,
        other_root=make_cert("certpump other root", ca=True),
        intermediate=intermediate,
        leaf=make_cert("localhost", issuer=intermediate, dns=["localhost"], ips=["127.0.0.1"]),
        direct_leaf=make_cert("localhost", issuer=root, dns=["localhost"], ips=["127.0.0.1"]),
        self_signed=make_cert("localhost", dns=["localhost"]),
        expired_leaf=make_cert(
            "localhost",
            issuer=root,
            dns=["localhost"],
            not_before=_now() - datetime.timedelta(days=60),
            not_after=_now() - datetime.timedelta(days=30),
        ),
        stale_ca=make_cert(
            "certpump stale cross-sign",
            issuer=root,
            ca=True,
            not_before=_now() - datetime.timedelta(days=400),
            not_after=_now() - datetime.timedelta(days=35),
        ),
    )


@pytest.fixture
def root_pem_file(pki: PKI, tmp_path: Path) -> Path:
    path = tmp_path / "roots.pem"
    path.write_bytes(pki.root.pem)
    return path


class TLSServer:
    """Threaded TLS listener on 127.0.0.1 that completes handshakes and idles."""

    def __init__(self, chain: list[Issued], tmp_path: Path, min_version: ssl.TLSVersion | None = None) -> None:
        cert_file = tmp_path / f"chain-{id(self)}.pem"
        key_file = tmp_path / f"key-{id(self)}.pem"
        cert_file.write_bytes(b"".join(i.pem for i in chain))
        key_file.write_bytes(chain[0].key_pem)

        self.ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.ctx.load_cert_chain(str(cert_file), str(key_file))
        if min_version is not None:
            self.ctx.minimum_version = min_version

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(8)
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self.sock.accept()
            except (socket.timeout, OSError):
                continue
            conn.settimeout(5)
            try:
                with self.ctx.wrap_socket(conn, server_side=True) as tls:
                    while tls.recv(1024):
                        pass
            except (ssl.SSLError, OSError):
                pass
            finally:
                conn.close()

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        self.sock.close()


@pytest.fixture
def tls_server(tmp_path: Path):
    servers: list[TLSServer] = []

    def start(*chain: Issued, min_version: ssl.TLSVersion | None = None) -> TLSServer:
        server = TLSServer(list(chain), tmp_path, min_version)
        servers.append(server)
        return server

    yield start
    for s in servers:
        s.close()


@pytest.fixture
def silent_port():
    """A port that accepts TCP but never speaks TLS."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
