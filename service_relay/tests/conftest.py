"""
Shared fixtures for relay tests.
"""

import asyncio

import pytest
import httpx

from shared.config import RelaySettings
from shared.metrics import RelayMetrics
from service_relay.app.adapters.upstream_client import UpstreamClient

UPSTREAM_URL = "http://mimir.test/api/v1/metrics/write"


class FakeUpstream:
    """Records relayed requests and answers with a configurable response."""

    def __init__(self):
        self.requests = []
        # relays that reached the upstream, including ones still in progress
        self.started = 0
        self.status_code = 200
        self.content = b"ok"
        self.content_type = "text/plain"
        self.error = None
        self.delay = 0.0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.started += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(
            self.status_code,
            content=self.content,
            headers={"content-type": self.content_type},
        )


@pytest.fixture
def relay_metrics():
    """Fresh metrics registry per test."""
    return RelayMetrics("relay-test")


@pytest.fixture
def fake_upstream():
    return FakeUpstream()


@pytest.fixture
def upstream_client(relay_metrics, fake_upstream):
    return UpstreamClient(
        UPSTREAM_URL,
        relay_metrics,
        pool_max_idle_per_host=4,
        timeout=5.0,
        transport=httpx.MockTransport(fake_upstream.handler),
    )


@pytest.fixture
def relay_settings():
    return RelaySettings(
        upstream_url=UPSTREAM_URL,
        max_body_size=1024,
        request_timeout_seconds=2.0,
    )
