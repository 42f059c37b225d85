from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import time
from typing import Any, Union

import nats
from nats.aio.msg import Msg
from nats.errors import Error as NATSError

from .config import Settings
from .fetch import build_client_context
from .heartbleed import HeartbleedProber
from .models import MalformedRequest, ProbeRequest
from .probe import CertProber
from .verify import load_trust_store

logger = logging.getLogger(__name__)

Prober = Union[CertProber, HeartbleedProber]

RECONNECT_WAIT = 1  # seconds


def build_prober(settings: Settings) -> Prober:
    if settings.probe == "heartbleed":
        return HeartbleedProber(default_timeout=settings.default_timeout)
    return CertProber(
        load_trust_store(settings.trust_store, settings.ca_file),
        default_timeout=settings.default_timeout,
        context=build_client_context(settings.tls_min_version, settings.tls_max_version),
    )


class Worker:
    """
    Bus side of the service: every message on the subscribed subject becomes
    its own task, and its result goes to the message's reply subject.
    """

    def __init__(self, prober: Prober, settings: Settings) -> None:
        self.prober = prober
        self.settings = settings
        self.nc: Any = None
        self._sub: Any = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def connect(self) -> None:
        self.nc = await nats.connect(
            servers=[self.settings.nats_url],
            name=f"certpump-{self.prober.kind}",
            max_reconnect_attempts=-1,
            reconnect_time_wait=RECONNECT_WAIT,
            disconnected_cb=self._on_disconnected,
            reconnected_cb=self._on_reconnected,
            closed_cb=self._on_closed,
            error_cb=self._on_error,
        )
        logger.info("connected to NATS (%s)", self.settings.nats_url)

    async def subscribe(self) -> None:
        self._sub = await self.nc.subscribe(
            self.settings.channel,
            queue=self.settings.queue_group,
            cb=self._on_message,
        )
        logger.info(
            "%s probe listening on %s (queue group %s)",
            self.prober.kind, self.settings.channel, self.settings.queue_group,
        )

    async def _on_message(self, msg: Msg) -> None:
        # no bound on in-flight probes: each one only waits on its own dial
        started = time.monotonic()
        task = asyncio.create_task(self.handle(msg.data, msg.reply, started=started))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, data: bytes, reply: str, *, started: float | None = None) -> None:
        """Probe one request and publish exactly one reply. Never raises."""
        if started is None:
            started = time.monotonic()
        try:
            try:
                request = ProbeRequest.from_json(data)
            except MalformedRequest as e:
                logger.warning("JSON request unmarshal: %s", e)
                request = ProbeRequest()

            result = await self.prober.probe(request, started=started)

            if not reply:
                logger.warning("%s: message has no reply subject, dropping result", request.address)
                return
            await self.publish(reply, result.to_json())
        except Exception:
            logger.exception("unexpected error while handling probe request")

    async def publish(self, subject: str, payload: bytes) -> None:
        try:
            await self.nc.publish(subject, payload)
        except NATSError as e:
            logger.error("pub: %s", e)

    async def close(self) -> None:
        if self._sub is not None:
            with contextlib.suppress(NATSError):
                await self._sub.unsubscribe()
            self._sub = None
        if self._tasks:
            logger.info("waiting for %d in-flight probes", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.nc is not None and not self.nc.is_closed:
            await self.nc.drain()

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)

        await self.connect()
        try:
            await self.subscribe()
            await stop.wait()
        finally:
            await self.close()

    async def _on_disconnected(self) -> None:
        logger.warning("got disconnected from NATS")

    async def _on_reconnected(self) -> None:
        url = self.nc.connected_url.netloc if self.nc.connected_url else "?"
        logger.info("got reconnected to %s", url)

    async def _on_closed(self) -> None:
        last_error = self.nc.last_error if self.nc is not None else None
        logger.info("NATS connection closed (last error: %r)", last_error)

    async def _on_error(self, e: Exception) -> None:
        logger.error("NATS error: %s", e)
