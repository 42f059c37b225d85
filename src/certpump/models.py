from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any


class MalformedRequest(ValueError):
    """Inbound payload could not be decoded into a ProbeRequest."""


@dataclass(frozen=True)
class ProbeRequest:
    """
    A single probe target, as received from the bus.

    hostname is sent as SNI and used for hostname validation; host is the
    address actually dialled.
    """
    hostname: str = ""
    host: str = ""
    port: int = 0
    timeout: int = 0  # seconds; <= 0 means "use the service default"

    @classmethod
    def from_dict(cls, data: Any) -> ProbeRequest:
        if not isinstance(data, dict):
            raise MalformedRequest(f"request must be a JSON object, got {type(data).__name__}")
        return cls(
            hostname=_field(data, "hostname", str, ""),
            host=_field(data, "host", str, ""),
            port=_field(data, "port", int, 0),
            timeout=_field(data, "timeout", int, 0),
        )

    @classmethod
    def from_json(cls, payload: bytes | str) -> ProbeRequest:
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedRequest(f"invalid JSON: {e}") from e
        return cls.from_dict(data)

    def with_default_timeout(self, default: int) -> ProbeRequest:
        if self.timeout > 0:
            return self
        return replace(self, timeout=default)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def _field(data: dict[str, Any], name: str, kind: type, default: Any) -> Any:
    value = data.get(name)
    if value is None:
        return default
    # bool is an int subclass; a boolean port is still garbage
    if not isinstance(value, kind) or isinstance(value, bool):
        raise MalformedRequest(f"field {name!r} must be {kind.__name__}, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class CertificateRecord:
    """
    Portable summary of one X.509 certificate.
    """
    issuer: str
    alt_names: list[str]
    signature_algorithm: str
    not_before: str  # RFC 1123, numeric zone
    not_after: str   # RFC 1123, numeric zone
    sha1: str
    serial: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer,
            "altNames": list(self.alt_names),
            "signatureAlgorithm": self.signature_algorithm,
            "notBefore": self.not_before,
            "notAfter": self.not_after,
            "sha1": self.sha1,
            "serial": self.serial,
        }


# leaf first, each following entry the issuer of the previous one
Chain = list[CertificateRecord]


@dataclass(frozen=True)
class ProbeError:
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass
class ProbeResult:
    hostname: str
    host: str
    port: int
    chains: list[Chain] = field(default_factory=list)
    error: ProbeError | None = None
    duration: float = 0.0

    @classmethod
    def for_request(cls, request: ProbeRequest) -> ProbeResult:
        return cls(hostname=request.hostname, host=request.host, port=request.port)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "hostname": self.hostname,
            "host": self.host,
            "port": self.port,
            "chains": [[c.to_dict() for c in chain] for chain in self.chains],
            "duration": self.duration,
        }
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")


@dataclass
class HeartbleedResult:
    hostname: str
    host: str
    port: int
    vulnerable: bool = False
    error: ProbeError | None = None
    duration: float = 0.0

    @classmethod
    def for_request(cls, request: ProbeRequest) -> HeartbleedResult:
        return cls(hostname=request.hostname, host=request.host, port=request.port)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.vulnerable

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "hostname": self.hostname,
            "host": self.host,
            "port": self.port,
            "vulnerable": self.vulnerable,
            "duration": self.duration,
        }
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
