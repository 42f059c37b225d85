from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from cryptography import x509
from OpenSSL import SSL

from .classify import classify
from .extract import chain_records
from .fetch import ConnectorError, build_client_context, fetch_peer_chain
from .models import ProbeRequest, ProbeResult
from .utils import utc_now
from .verify import TrustStore, Verification, Verified, verify_chain

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

FetchFunc = Callable[..., Awaitable[list[x509.Certificate]]]


class CertProber:
    """
    Connect, extract, verify, classify, assemble. Holds only immutable
    configuration, so one instance serves any number of concurrent probes.
    """

    kind = "cert"

    def __init__(
        self,
        trust_store: TrustStore,
        *,
        default_timeout: int = DEFAULT_TIMEOUT,
        context: SSL.Context | None = None,
        fetch: FetchFunc = fetch_peer_chain,
    ) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self.trust_store = trust_store
        self.default_timeout = default_timeout
        self.context = context or build_client_context()
        self._fetch = fetch

    async def probe(self, request: ProbeRequest, *, started: float | None = None) -> ProbeResult:
        """
        Probe one target. Classified failures are reported in the result,
        never raised. `started` is a time.monotonic() reading taken when the
        request arrived; defaults to now.
        """
        if started is None:
            started = time.monotonic()
        timeout = request.with_default_timeout(self.default_timeout).timeout
        result = ProbeResult.for_request(request)

        try:
            certs = await self._fetch(
                request.host,
                request.port,
                hostname=request.hostname,
                timeout=timeout,
                context=self.context,
            )
        except ConnectorError as e:
            result.error = classify(connect_error=e)
        else:
            verification: Verification | None = None
            if certs:
                verification = verify_chain(
                    certs, request.hostname, trust_store=self.trust_store, now=utc_now()
                )
            result.error = classify(certificates=certs, verification=verification)

            if isinstance(verification, Verified):
                result.chains = [chain_records(path) for path in verification.chains]
            elif certs:
                result.chains = [chain_records(certs)]

        result.duration = time.monotonic() - started
        if result.error is not None:
            logger.info(
                "%s:%d (%s) Error:%s (%s)",
                request.hostname, request.port, request.host,
                result.error.message, result.error.code,
            )
        return result
