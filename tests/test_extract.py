import hashlib
import re
from datetime import datetime, timedelta, timezone

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography import x509
from cryptography.x509.oid import NameOID

from certpump.extract import certificate_record, chain_records, common_name, signature_algorithm_name
from certpump.utils import dt_to_rfc1123z

from conftest import make_cert

RFC1123Z = re.compile(r"^[A-Z][a-z]{2}, \d{2} [A-Z][a-z]{2} \d{4} \d{2}:\d{2}:\d{2} \+0000$")


def test_record_fields(pki):
    rec = certificate_record(pki.leaf.cert)
    der = pki.leaf.cert.public_bytes(serialization.Encoding.DER)

    assert rec.issuer == "certpump test intermediate"
    assert rec.alt_names == ["localhost"]
    assert rec.signature_algorithm == "ECDSA-SHA256"
    assert RFC1123Z.match(rec.not_before)
    assert RFC1123Z.match(rec.not_after)
    assert rec.sha1 == hashlib.sha1(der).hexdigest()
    assert rec.serial == format(pki.leaf.cert.serial_number, "x")


def test_alt_names_fall_back_to_common_name(pki):
    rec = certificate_record(pki.root.cert)
    assert rec.alt_names == ["certpump test root"]


def test_alt_names_never_empty_without_cn():
    issued = make_cert(None)
    rec = certificate_record(issued.cert)
    assert rec.alt_names == [""]
    assert rec.issuer == ""


def test_alt_names_keep_certificate_order():
    issued = make_cert("b.example", dns=["b.example", "a.example", "c.example"])
    assert certificate_record(issued.cert).alt_names == ["b.example", "a.example", "c.example"]


def test_rsa_signature_name():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "rsa")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    assert signature_algorithm_name(cert) == "SHA256-RSA"


def test_chain_records_preserve_order(pki):
    chain = chain_records([pki.leaf.cert, pki.intermediate.cert, pki.root.cert])
    assert [c.issuer for c in chain] == [
        "certpump test intermediate",
        "certpump test root",
        "certpump test root",
    ]


def test_common_name(pki):
    assert common_name(pki.leaf.cert.subject) == "localhost"
    assert common_name(x509.Name([])) == ""


def test_rfc1123z_format():
    dt = datetime(2006, 1, 2, 15, 4, 5, 999, tzinfo=timezone.utc)
    assert dt_to_rfc1123z(dt) == "Mon, 02 Jan 2006 15:04:05 +0000"
    # naive values are taken as UTC
    assert dt_to_rfc1123z(dt.replace(tzinfo=None)) == "Mon, 02 Jan 2006 15:04:05 +0000"
