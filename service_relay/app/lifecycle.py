"""
Startup and graceful shutdown of the relay, the scrape endpoint and the
metrics push runtime.
"""

import asyncio
import contextlib
import signal
import socket
from typing import List, Optional

import uvicorn
from fastapi import FastAPI

from shared.config import RelaySettings, parse_address
from shared.errors import ConfigError
from shared.logging import get_logger
from shared.metrics import RelayMetrics
from . import __version__
from .adapters.upstream_client import UpstreamClient
from .auth.bearer_tokens import BearerTokenAllower
from .main import USER_AGENT, RelayService, MetricsExpositionService
from .push.runtime import CancellationToken, EnableMetricsPush, MetricPushRuntime

logger = get_logger("relay.lifecycle")

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _ManagedServer(uvicorn.Server):
    """uvicorn server whose shutdown is driven by the coordinator's signal handling."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(address: str) -> socket.socket:
    """Bind a listening socket for ``host:port``. Raises ``OSError`` on failure."""
    host, port = parse_address(address)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


class RelayLifecycle:
    """Runs the relay and its background work until a termination signal.

    On SIGINT/SIGTERM the push runtime is cancelled and joined, and both
    servers stop accepting connections while in-flight requests finish.
    """

    def __init__(self, settings: RelaySettings, allower: Optional[BearerTokenAllower] = None,
                 metrics: Optional[RelayMetrics] = None,
                 upstream_client: Optional[UpstreamClient] = None):
        self.settings = settings
        self.allower = allower
        self.metrics = metrics or RelayMetrics("relay", version=__version__)
        self.cancel = CancellationToken()
        if upstream_client is None:
            upstream_client = UpstreamClient(
                settings.upstream_url,
                self.metrics,
                pool_max_idle_per_host=settings.pool_max_idle_per_host,
                timeout=settings.upstream_timeout_seconds,
                user_agent=USER_AGENT,
            )
        self.upstream_client = upstream_client
        self.push_runtime: Optional[MetricPushRuntime] = None
        self.relay_socket: Optional[socket.socket] = None
        self.metrics_socket: Optional[socket.socket] = None
        self._servers: List[_ManagedServer] = []

    def build_relay_app(self) -> FastAPI:
        return RelayService(self.settings, self.metrics, self.upstream_client, self.allower).app

    def build_metrics_app(self) -> FastAPI:
        return MetricsExpositionService(self.settings, self.metrics).app

    def start_push_runtime(self) -> Optional[MetricPushRuntime]:
        push_settings = self.settings.metrics_push
        if push_settings is None:
            logger.info("Metrics push not configured")
            return None

        self.push_runtime = MetricPushRuntime.start(
            self.metrics.registry,
            EnableMetricsPush(
                cancel=self.cancel,
                bearer_token=push_settings.bearer_token,
                config=push_settings,
            ),
            metrics=self.metrics,
        )
        return self.push_runtime

    def shutdown(self) -> None:
        """Begin graceful shutdown. Safe to call more than once."""
        if not self.cancel.is_cancelled():
            logger.info("Shutdown requested, draining")
        self.cancel.cancel()
        for server in self._servers:
            server.should_exit = True

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.shutdown)
            except NotImplementedError:
                # no loop signal support on Windows
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.shutdown))

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    async def serve(self) -> None:
        """Bind, serve and drain. Bind failures raise before anything starts."""
        relay_socket = bind_socket(self.settings.listen_address)
        try:
            metrics_socket = bind_socket(self.settings.metrics_address)
        except (OSError, ConfigError):
            relay_socket.close()
            raise
        self.relay_socket, self.metrics_socket = relay_socket, metrics_socket

        relay_server = _ManagedServer(uvicorn.Config(
            self.build_relay_app(),
            log_config=None,
            access_log=False,
        ))
        metrics_server = _ManagedServer(uvicorn.Config(
            self.build_metrics_app(),
            log_config=None,
            access_log=False,
        ))
        self._servers = [relay_server, metrics_server]

        loop = asyncio.get_running_loop()
        self._install_signal_handlers(loop)

        logger.info(
            "Listening",
            listen_address=self.settings.listen_address,
            metrics_address=self.settings.metrics_address,
            upstream_url=self.settings.upstream_url
        )

        self.start_push_runtime()
        try:
            await asyncio.gather(
                relay_server.serve(sockets=[relay_socket]),
                metrics_server.serve(sockets=[metrics_socket]),
            )
        finally:
            self.shutdown()
            self._remove_signal_handlers(loop)
            if self.push_runtime is not None:
                await loop.run_in_executor(None, self.push_runtime.join)
            await self.upstream_client.close()
            logger.info("Shutdown complete")
