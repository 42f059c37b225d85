from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from nats.errors import Error as NATSError

from . import __version__
from .config import ConfigError, Settings
from .fetch import TLS_VERSIONS, build_client_context
from .heartbleed import HeartbleedProber
from .log import setup_logging
from .models import ProbeRequest
from .probe import DEFAULT_TIMEOUT, CertProber
from .verify import TRUST_STORES, TrustStoreError, load_trust_store
from .worker import Worker, build_prober

logger = logging.getLogger(__name__)


def _write_output(out_path: str | None, payload: Any) -> None:
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if out_path:
        Path(out_path).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)


def _add_target_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("target", help="Address to connect to, as host:port (e.g., 195.154.227.44:443)")
    p.add_argument("--hostname", help="Name for SNI and hostname validation (default: host)")
    p.add_argument(
        "--timeout", type=int, default=DEFAULT_TIMEOUT,
        help=f"Connect + handshake timeout in seconds (default: {DEFAULT_TIMEOUT})",
    )
    p.add_argument("--out", "-o", help="Write JSON output to file (default: stdout)")


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="certpump",
        description="Probe TLS endpoints and classify the certificate chains they present.",
    )
    p.add_argument("--version", action="store_true", help="Print version and exit")
    p.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    sub = p.add_subparsers(dest="command")

    probe = sub.add_parser("probe", help="Run one certificate probe and print the result")
    _add_target_args(probe)
    probe.add_argument(
        "--store",
        choices=TRUST_STORES,
        default="system",
        help="Trust store to verify against (default: system)",
    )
    probe.add_argument("--ca-file", help="PEM bundle of trust anchors (overrides --store)")
    probe.add_argument("--tls-min", choices=list(TLS_VERSIONS), default="TLSv1", help="Lowest protocol version offered")
    probe.add_argument("--tls-max", choices=list(TLS_VERSIONS), default="TLSv1_2", help="Highest protocol version offered")

    hb = sub.add_parser("heartbleed", help="Check one endpoint for the heartbeat over-read")
    _add_target_args(hb)

    sub.add_parser("serve", help="Serve probe requests from NATS (configured from the environment)")
    return p.parse_args(argv)


def _parse_target(target: str) -> tuple[str, int]:
    if ":" not in target:
        raise ValueError("target must be in the form host:port (e.g., example.com:443)")
    host, port_s = target.rsplit(":", 1)
    host = host.strip().strip("[]")
    port_s = port_s.strip()
    if not host:
        raise ValueError("host is empty")
    if not port_s.isdigit():
        raise ValueError("port must be a number")
    port = int(port_s)
    if not (1 <= port <= 65535):
        raise ValueError("port out of range")
    return host, port


def _request_from_args(args: argparse.Namespace) -> ProbeRequest:
    host, port = _parse_target(args.target)
    if args.timeout <= 0:
        raise ValueError("timeout must be positive")
    return ProbeRequest(hostname=args.hostname or host, host=host, port=port, timeout=args.timeout)


def _run_probe(args: argparse.Namespace) -> int:
    request = _request_from_args(args)
    prober = CertProber(
        load_trust_store(args.store, args.ca_file),
        default_timeout=args.timeout,
        context=build_client_context(args.tls_min, args.tls_max),
    )
    result = asyncio.run(prober.probe(request))
    _write_output(args.out, result.to_dict())
    return 0 if result.ok else 3


def _run_heartbleed(args: argparse.Namespace) -> int:
    request = _request_from_args(args)
    result = asyncio.run(HeartbleedProber(default_timeout=args.timeout).probe(request))
    _write_output(args.out, result.to_dict())
    return 0 if result.ok else 3


def _run_serve() -> int:
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    worker = Worker(build_prober(settings), settings)
    try:
        asyncio.run(worker.run())
    except (NATSError, OSError) as e:
        logger.error("can't serve from %s: %s", settings.nats_url, e)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    if args.version:
        print(__version__)
        return 0

    try:
        if args.command == "serve":
            return _run_serve()
        setup_logging(args.log_level.upper())
        if args.command == "probe":
            return _run_probe(args)
        if args.command == "heartbleed":
            return _run_heartbleed(args)
    except (ConfigError, TrustStoreError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print("Error: a command is required (probe, heartbleed, serve)", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
