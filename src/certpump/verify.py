from __future__ import annotations

import enum
import ipaddress
import logging
import re
import ssl
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence, Union

import certifi
from cryptography import x509
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError

from .utils import utc_now

logger = logging.getLogger(__name__)

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)
_DNS_LABEL_RE = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")

TRUST_STORES = ("system", "mozilla")


class TrustStoreError(Exception):
    pass


class FailureReason(enum.Enum):
    EXPIRED = "expired"
    NAME_MISMATCH = "name_mismatch"
    UNTRUSTED_ROOT = "untrusted_root"
    REVOKED = "revoked"  # revocation is never checked; kept so consumers can match exhaustively
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Verified:
    """One or more leaf-first paths, each ending in a trust anchor."""
    chains: list[list[x509.Certificate]]


@dataclass(frozen=True)
class VerificationFailure:
    reason: FailureReason
    message: str


Verification = Union[Verified, VerificationFailure]


@dataclass(frozen=True)
class TrustStore:
    roots: frozenset[x509.Certificate]
    subjects: frozenset[x509.Name]
    store: Store

    @classmethod
    def from_certificates(cls, certs: Iterable[x509.Certificate]) -> TrustStore:
        roots = frozenset(certs)
        if not roots:
            raise TrustStoreError("trust store is empty")
        return cls(
            roots=roots,
            subjects=frozenset(c.subject for c in roots),
            store=Store(list(roots)),
        )

    def __len__(self) -> int:
        return len(self.roots)


def _load_pem_bundle(data: bytes, source: str) -> list[x509.Certificate]:
    # one bad entry must not discard the rest of a system bundle
    out: list[x509.Certificate] = []
    for block in _PEM_CERT_RE.findall(data):
        try:
            out.append(x509.load_pem_x509_certificate(block))
        except ValueError as e:
            logger.debug("skipping unparsable certificate in %s: %s", source, e)
    return out


def _load_file(path: str | Path) -> list[x509.Certificate]:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise TrustStoreError(f"cannot read {path}: {e}") from e
    return _load_pem_bundle(data, str(path))


def _load_system_roots() -> list[x509.Certificate]:
    paths = ssl.get_default_verify_paths()
    roots: list[x509.Certificate] = []
    if paths.cafile:
        roots.extend(_load_file(paths.cafile))
    if paths.capath:
        for entry in sorted(Path(paths.capath).iterdir()):
            if entry.is_file():
                try:
                    roots.extend(_load_file(entry))
                except TrustStoreError as e:
                    logger.debug("%s", e)
    return roots


def load_trust_store(kind: str = "system", ca_file: str | None = None) -> TrustStore:
    """
    Load verification roots: an explicit PEM bundle when `ca_file` is given,
    else the interpreter's OpenSSL default paths ("system") or the certifi
    bundle ("mozilla").
    """
    if ca_file:
        roots = _load_file(ca_file)
        source = ca_file
    elif kind == "system":
        roots = _load_system_roots()
        source = "system default verify paths"
    elif kind == "mozilla":
        roots = _load_file(certifi.where())
        source = f"certifi ({certifi.where()})"
    else:
        raise TrustStoreError(f"unknown trust store {kind!r} (expected one of {', '.join(TRUST_STORES)})")

    if not roots:
        raise TrustStoreError(f"no certificates found in {source}")
    store = TrustStore.from_certificates(roots)
    logger.info("loaded %d trust anchors from %s", len(store), source)
    return store


def _normalize_hostname(hostname: str) -> str:
    h = hostname.strip().rstrip(".")
    if h.startswith("[") and h.endswith("]"):
        h = h[1:-1]
    if not h.isascii():
        try:
            h = h.encode("idna").decode("ascii")
        except UnicodeError:
            return ""
    return h.lower()


def _parse_ip(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        return None


def _is_dns_name(hostname: str) -> bool:
    labels = hostname.split(".")
    return len(hostname) <= 253 and all(_DNS_LABEL_RE.match(label) for label in labels)


def _dns_pattern_matches(pattern: str, hostname: str) -> bool:
    pattern = pattern.rstrip(".").lower()
    if pattern == hostname:
        return True
    # only a whole left-most wildcard label, and never directly under a TLD
    if not pattern.startswith("*.") or "*" in pattern[2:]:
        return False
    parent = pattern[2:]
    if "." not in parent:
        return False
    head, sep, rest = hostname.partition(".")
    return bool(sep) and bool(head) and rest == parent


def hostname_matches(cert: x509.Certificate, hostname: str) -> bool:
    """
    True when the certificate's subjectAltName covers `hostname`. The subject
    CN is not consulted.
    """
    host = _normalize_hostname(hostname)
    if not host:
        return False
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except (x509.ExtensionNotFound, ValueError):
        return False

    ip = _parse_ip(host)
    if ip is not None:
        return ip in san.get_values_for_type(x509.IPAddress)
    return any(_dns_pattern_matches(p, host) for p in san.get_values_for_type(x509.DNSName))


def _reaches_trust_anchor(certs: Sequence[x509.Certificate], trust_store: TrustStore) -> bool:
    current = certs[0]
    pool = list(certs[1:])
    seen = {current}
    while True:
        if current in trust_store.roots or current.issuer in trust_store.subjects:
            return True
        parent = next((c for c in pool if c.subject == current.issuer and c not in seen), None)
        if parent is None:
            return False
        seen.add(parent)
        current = parent


def _valid_at(cert: x509.Certificate, now: datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


def diagnose_failure(
    certs: Sequence[x509.Certificate],
    hostname: str,
    *,
    trust_store: TrustStore,
    now: datetime,
) -> FailureReason:
    """
    Work out why verification failed by inspecting the chain itself, in the
    order a path validator reports problems: leaf validity, name, the rest
    of the presented certificates, then trust.
    """
    leaf = certs[0]
    if not _valid_at(leaf, now):
        return FailureReason.EXPIRED
    if not hostname_matches(leaf, hostname):
        return FailureReason.NAME_MISMATCH
    if not all(_valid_at(c, now) for c in certs[1:]):
        return FailureReason.EXPIRED
    if not _reaches_trust_anchor(certs, trust_store):
        return FailureReason.UNTRUSTED_ROOT
    return FailureReason.UNKNOWN


def _server_subject(hostname: str) -> x509.GeneralName:
    host = _normalize_hostname(hostname)
    ip = _parse_ip(host)
    if ip is not None:
        return x509.IPAddress(ip)
    if not host or not _is_dns_name(host):
        raise ValueError(f"invalid hostname {hostname!r}")
    return x509.DNSName(host)


def verify_chain(
    certs: Sequence[x509.Certificate],
    hostname: str,
    *,
    trust_store: TrustStore,
    now: datetime | None = None,
) -> Verification:
    """
    Verify certs[0] for `hostname` at `now` against the trust store, using
    only certs[1:] as intermediates.
    """
    if not certs:
        raise ValueError("verify_chain needs at least one certificate")
    now = now or utc_now()

    leaf, intermediates = certs[0], list(certs[1:])
    try:
        verifier = (
            PolicyBuilder()
            .store(trust_store.store)
            .time(now)
            .build_server_verifier(_server_subject(hostname))
        )
        path = verifier.verify(leaf, intermediates)
    except (VerificationError, ValueError) as e:
        reason = diagnose_failure(certs, hostname, trust_store=trust_store, now=now)
        return VerificationFailure(reason=reason, message=str(e))

    return Verified(chains=[list(path)])
