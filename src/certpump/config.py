from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping

from .fetch import TLS_VERSIONS
from .verify import TRUST_STORES

PROBE_KINDS = ("cert", "heartbleed")

_DEFAULT_CHANNELS = {"cert": "get.CERT.*", "heartbleed": "get.HEARTBLEED.*"}
_DEFAULT_QUEUE_GROUPS = {"cert": "certpump_group", "heartbleed": "heartbleed_group"}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    nats_url: str = "nats://127.0.0.1:4222"
    channel: str = _DEFAULT_CHANNELS["cert"]
    queue_group: str = _DEFAULT_QUEUE_GROUPS["cert"]
    probe: str = "cert"
    default_timeout: int = 10
    trust_store: str = "system"
    ca_file: str | None = None
    tls_min_version: str = "TLSv1"
    tls_max_version: str = "TLSv1_2"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env

        def get(name: str, default: str) -> str:
            value = env.get(name, "").strip()
            return value or default

        probe = get("CERTPUMP_PROBE", "cert").lower()
        if probe not in PROBE_KINDS:
            raise ConfigError(f"CERTPUMP_PROBE must be one of {', '.join(PROBE_KINDS)}, got {probe!r}")

        timeout_s = get("CERTPUMP_TIMEOUT", str(cls.default_timeout))
        try:
            timeout = int(timeout_s)
        except ValueError:
            raise ConfigError(f"CERTPUMP_TIMEOUT must be an integer, got {timeout_s!r}") from None
        if timeout <= 0:
            raise ConfigError(f"CERTPUMP_TIMEOUT must be positive, got {timeout}")

        trust_store = get("CERTPUMP_TRUST_STORE", cls.trust_store).lower()
        if trust_store not in TRUST_STORES:
            raise ConfigError(f"CERTPUMP_TRUST_STORE must be one of {', '.join(TRUST_STORES)}, got {trust_store!r}")

        tls_min = get("CERTPUMP_TLS_MIN_VERSION", cls.tls_min_version)
        tls_max = get("CERTPUMP_TLS_MAX_VERSION", cls.tls_max_version)
        for name, value in (("CERTPUMP_TLS_MIN_VERSION", tls_min), ("CERTPUMP_TLS_MAX_VERSION", tls_max)):
            if value not in TLS_VERSIONS:
                raise ConfigError(f"{name} must be one of {', '.join(TLS_VERSIONS)}, got {value!r}")
        if TLS_VERSIONS[tls_min] > TLS_VERSIONS[tls_max]:
            raise ConfigError(f"TLS version range is empty: {tls_min} > {tls_max}")

        log_level = get("CERTPUMP_LOG_LEVEL", cls.log_level).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigError(f"CERTPUMP_LOG_LEVEL is not a logging level: {log_level!r}")

        return cls(
            nats_url=get("NATS_URL", cls.nats_url),
            channel=get("NATS_CHANNEL", _DEFAULT_CHANNELS[probe]),
            queue_group=get("NATS_QUEUE_GROUP", _DEFAULT_QUEUE_GROUPS[probe]),
            probe=probe,
            default_timeout=timeout,
            trust_store=trust_store,
            ca_file=get("CERTPUMP_CA_FILE", "") or None,
            tls_min_version=tls_min,
            tls_max_version=tls_max,
            log_level=log_level,
        )
