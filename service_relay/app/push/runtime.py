"""
Periodic push of the relay's own metrics to a remote collector.

The push loop runs on its own thread with its own event loop, so a slow or
stuck push never competes with request handling for the serving loop.
"""

import asyncio
import json
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import snappy
from prometheus_client import CollectorRegistry
from pydantic import BaseModel, Field

from shared.config import MetricsPushSettings
from shared.errors import PushCycleError
from shared.logging import get_logger
from shared.metrics import RelayMetrics
from .exposition import encode_delimited, gather

logger = get_logger("relay.push")

PUSH_CLIENT_TIMEOUT_SECONDS = 30.0
CONTENT_ENCODING = "snappy"

ClientFactory = Callable[[], httpx.AsyncClient]


class CancellationToken:
    """One-shot cancellation flag shared between threads and event loops.

    ``cancel`` is idempotent. Coroutines on any loop can await ``cancelled()``;
    plain threads can block on ``wait()``.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            waiters, self._waiters = self._waiters, []

        for loop, future in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, future)

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def cancelled(self) -> asyncio.Future:
        """Return a future on the running loop that resolves once cancelled."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            if self._event.is_set():
                future.set_result(None)
                return future
            entry = (loop, future)
            self._waiters.append(entry)

        future.add_done_callback(lambda _: self._discard(entry))
        return future

    def _discard(self, entry) -> None:
        with self._lock:
            if entry in self._waiters:
                self._waiters.remove(entry)


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class IntervalTimer:
    """Fixed-period ticker that skips missed ticks.

    The first tick fires immediately and later ticks sit on a fixed grid of
    ``period``. A deadline that passed while the caller was busy is not fired
    late: the timer waits for the next grid slot after now, so two ticks are
    never less than ``period`` apart.
    """

    def __init__(self, period: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._deadline: Optional[float] = None

    async def tick(self) -> float:
        now = self._clock()
        if self._deadline is None:
            self._deadline = now
        elif now > self._deadline:
            missed = (now - self._deadline) // self.period + 1
            self._deadline += missed * self.period

        if now < self._deadline:
            await self._sleep(self._deadline - now)

        fired = self._deadline
        self._deadline = fired + self.period
        return fired


class MetricPayload(BaseModel):
    """Static labels plus the encoded metric families for one push."""

    # merged into every series by the collector
    labels: Optional[Dict[str, str]] = None
    # delimited protobuf MetricFamily messages, serialized as a JSON array of bytes
    buf: List[int] = Field(default_factory=list)

    def to_json(self) -> bytes:
        data = self.model_dump(exclude_none=True)
        return json.dumps(data, separators=(",", ":")).encode("utf-8")


@dataclass
class EnableMetricsPush:
    """Everything the push runtime needs besides the registry."""

    # shuts the push loop down gracefully
    cancel: CancellationToken
    bearer_token: str
    config: MetricsPushSettings


def create_push_client() -> httpx.AsyncClient:
    """Client used to push metrics. Rebuilt after every failed push."""
    return httpx.AsyncClient(timeout=httpx.Timeout(PUSH_CLIENT_TIMEOUT_SECONDS))


def build_push_body(registry: CollectorRegistry, labels: Optional[Dict[str, str]],
                    now_ms: Optional[int] = None) -> bytes:
    """Snapshot, timestamp, encode, wrap and compress the registry."""
    # one collection timestamp for every sample in this push
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    try:
        families = gather(registry, timestamp_ms=now_ms)
        buf = encode_delimited(families)
    except Exception as e:
        raise PushCycleError(f"unable to encode metrics: {e}") from e

    try:
        serialized = MetricPayload(labels=labels, buf=list(buf)).to_json()
    except (TypeError, ValueError) as e:
        raise PushCycleError(f"unable to serialize metric payload: {e}") from e

    try:
        return snappy.compress(serialized)
    except Exception as e:
        raise PushCycleError(f"unable to snappy encode metrics: {e}") from e


async def push_metrics(bearer_token: str, client: httpx.AsyncClient, push_url: str,
                       registry: CollectorRegistry,
                       labels: Optional[Dict[str, str]]) -> None:
    """Send one snapshot of ``registry`` to ``push_url``.

    Raises ``PushCycleError`` on any encoding, transport or non-2xx failure.
    """
    logger.debug("Pushing metrics to remote", push_url=push_url)

    compressed = build_push_body(registry, labels)

    try:
        response = await client.post(
            push_url,
            headers={
                "Authorization": bearer_token,
                "Content-Encoding": CONTENT_ENCODING,
            },
            content=compressed,
        )
    except httpx.HTTPError as e:
        raise PushCycleError(f"unable to send metrics: {type(e).__name__}: {e}") from e

    if not response.is_success:
        raise PushCycleError(
            f"metrics push failed: [{response.status_code}]:{response.text}"
        )

    logger.debug("Successfully pushed metrics", push_url=push_url)


class MetricPushRuntime:
    """Owns the push thread, its event loop and its cancellation token.

    At most one push is in flight: each tick runs its push to completion before
    the loop waits for the next tick or cancellation.
    """

    def __init__(self, registry: CollectorRegistry, mp_config: EnableMetricsPush,
                 metrics: Optional[RelayMetrics] = None,
                 client_factory: ClientFactory = create_push_client):
        self.registry = registry
        self.mp_config = mp_config
        self.metrics = metrics
        self.client_factory = client_factory
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None

    @classmethod
    def start(cls, registry: CollectorRegistry, mp_config: EnableMetricsPush,
              metrics: Optional[RelayMetrics] = None,
              client_factory: ClientFactory = create_push_client) -> "MetricPushRuntime":
        runtime = cls(registry, mp_config, metrics=metrics, client_factory=client_factory)
        runtime._thread = threading.Thread(
            target=runtime._run_thread,
            name="metric-push-runtime",
            daemon=True,
        )
        runtime._thread.start()
        return runtime

    @property
    def cancel(self) -> CancellationToken:
        return self.mp_config.cancel

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        """Block until the push loop has exited.

        Re-raises an unexpected error from the loop; a normal cancellation
        returns ``None``.
        """
        if self._thread is None:
            return
        logger.debug("Waiting for the metric push to shut down")
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("metric push runtime did not stop in time")
        if self._error is not None:
            raise self._error

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run())
        except BaseException as e:
            logger.error("Metric push runtime crashed", error=str(e), exc_info=True)
            self._error = e

    async def _run(self) -> None:
        config = self.mp_config.config
        timer = IntervalTimer(config.push_interval)
        client = self.client_factory()
        cancelled = self.cancel.cancelled()
        logger.info("Starting metrics push", push_url=config.push_url, interval_seconds=config.push_interval)

        try:
            while True:
                tick = asyncio.ensure_future(timer.tick())
                await asyncio.wait({tick, cancelled}, return_when=asyncio.FIRST_COMPLETED)

                if cancelled.done():
                    tick.cancel()
                    logger.info("Received cancellation request, shutting down metrics push")
                    return

                if not await self._push_once(client):
                    # drop a client that may be stuck on a dead connection or stale DNS
                    await client.aclose()
                    client = self.client_factory()
        finally:
            cancelled.cancel()
            await client.aclose()

    async def _push_once(self, client: httpx.AsyncClient) -> bool:
        config = self.mp_config.config
        try:
            await push_metrics(
                self.mp_config.bearer_token,
                client,
                config.push_url,
                self.registry,
                dict(config.labels) if config.labels is not None else None,
            )
        except PushCycleError as e:
            logger.warning("Unable to push metrics", error=e.message)
        except Exception as e:
            logger.warning("Unable to push metrics", error=str(e), error_type=type(e).__name__)
        else:
            self._record(True)
            return True

        self._record(False)
        return False

    def _record(self, success: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_push(success)
