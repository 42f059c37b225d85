from __future__ import annotations

from typing import Sequence

from cryptography import x509

from .extract import common_name
from .fetch import ConnectorError, ConnectTimeout
from .models import ProbeError
from .verify import FailureReason, Verification, VerificationFailure

ERR_IO_TIMEOUT = ProbeError(code="ETIMEOUT", message="IO timeout")
ERR_NO_CERT = ProbeError(code="NOCERT", message="no cert found")
ERR_SELF_SIGNED = ProbeError(code="SELFSIGNED", message="x509: self signed cert")
ERR_INCOMPLETE_CHAIN = ProbeError(code="INCOMPLETECERTCHAIN", message="x509: incomplete cert chain")
ERR_INVALID_HOSTNAME = ProbeError(code="INVALIDHOSTNAME", message="x509: invalid cert for hostname")

CODE_CONNECT_ERROR = "CONNECTERROR"
CODE_CERT_ERROR = "CERTERROR"


def classify(
    *,
    connect_error: ConnectorError | None = None,
    certificates: Sequence[x509.Certificate] = (),
    verification: Verification | None = None,
) -> ProbeError | None:
    """
    Map what the connector and verifier observed to a stable error, or None
    for success. Rules are checked in order and the first match wins; the
    single-certificate rules run before the hostname rule because a missing
    chain is the more actionable diagnosis.
    """
    if isinstance(connect_error, ConnectTimeout):
        return ERR_IO_TIMEOUT
    if connect_error is not None:
        return ProbeError(code=CODE_CONNECT_ERROR, message=str(connect_error))

    if not certificates:
        return ERR_NO_CERT

    if verification is None:
        raise ValueError("certificates were observed but never verified")
    if not isinstance(verification, VerificationFailure):
        return None

    if len(certificates) == 1:
        leaf = certificates[0]
        if common_name(leaf.issuer) == common_name(leaf.subject):
            return ERR_SELF_SIGNED
        return ERR_INCOMPLETE_CHAIN

    if verification.reason is FailureReason.NAME_MISMATCH:
        return ERR_INVALID_HOSTNAME

    return ProbeError(code=CODE_CERT_ERROR, message=verification.message)
