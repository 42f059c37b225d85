from __future__ import annotations

from typing import Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID, SignatureAlgorithmOID

from .models import CertificateRecord, Chain
from .utils import dt_to_rfc1123z, serial_hex, sha1_hex

_SIG_ALG_NAMES = {
    SignatureAlgorithmOID.RSA_WITH_MD5: "MD5-RSA",
    SignatureAlgorithmOID.RSA_WITH_SHA1: "SHA1-RSA",
    SignatureAlgorithmOID.RSA_WITH_SHA224: "SHA224-RSA",
    SignatureAlgorithmOID.RSA_WITH_SHA256: "SHA256-RSA",
    SignatureAlgorithmOID.RSA_WITH_SHA384: "SHA384-RSA",
    SignatureAlgorithmOID.RSA_WITH_SHA512: "SHA512-RSA",
    SignatureAlgorithmOID.ECDSA_WITH_SHA1: "ECDSA-SHA1",
    SignatureAlgorithmOID.ECDSA_WITH_SHA224: "ECDSA-SHA224",
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ECDSA-SHA256",
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: "ECDSA-SHA384",
    SignatureAlgorithmOID.ECDSA_WITH_SHA512: "ECDSA-SHA512",
    SignatureAlgorithmOID.DSA_WITH_SHA1: "DSA-SHA1",
    SignatureAlgorithmOID.DSA_WITH_SHA224: "DSA-SHA224",
    SignatureAlgorithmOID.DSA_WITH_SHA256: "DSA-SHA256",
    SignatureAlgorithmOID.ED25519: "Ed25519",
    SignatureAlgorithmOID.ED448: "Ed448",
}


def common_name(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    return value if isinstance(value, str) else value.decode("utf-8", "replace")


def san_dns_names(cert: x509.Certificate) -> list[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except (x509.ExtensionNotFound, ValueError):
        return []
    return list(ext.value.get_values_for_type(x509.DNSName))


def signature_algorithm_name(cert: x509.Certificate) -> str:
    oid = cert.signature_algorithm_oid
    if oid in _SIG_ALG_NAMES:
        return _SIG_ALG_NAMES[oid]
    if oid == SignatureAlgorithmOID.RSASSA_PSS:
        hash_alg = cert.signature_hash_algorithm
        return f"{hash_alg.name.upper()}-RSAPSS" if hash_alg else "RSAPSS"
    return oid.dotted_string


def certificate_record(cert: x509.Certificate) -> CertificateRecord:
    names = san_dns_names(cert)
    if not names:
        names = [common_name(cert.subject)]

    der = cert.public_bytes(serialization.Encoding.DER)
    return CertificateRecord(
        issuer=common_name(cert.issuer),
        alt_names=names,
        signature_algorithm=signature_algorithm_name(cert),
        not_before=dt_to_rfc1123z(cert.not_valid_before_utc),
        not_after=dt_to_rfc1123z(cert.not_valid_after_utc),
        sha1=sha1_hex(der),
        serial=serial_hex(cert.serial_number),
    )


def chain_records(certs: Sequence[x509.Certificate]) -> Chain:
    return [certificate_record(c) for c in certs]
