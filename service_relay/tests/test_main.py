"""
Tests for the relay request pipeline and the metrics exposition app.
"""

from unittest.mock import patch

import pytest
import httpx
from fastapi.testclient import TestClient

from shared.config import RelaySettings
from service_relay.app.auth.bearer_tokens import BearerTokenAllower
from service_relay.app.main import create_app, create_metrics_app, PUBLISH_ROUTE, METRICS_ROUTE
from .conftest import UPSTREAM_URL


@pytest.fixture
def allower():
    return BearerTokenAllower(["abc123"])


@pytest.fixture
def client(relay_settings, relay_metrics, upstream_client, allower):
    app = create_app(relay_settings, relay_metrics, upstream_client, allower)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def open_client(relay_settings, relay_metrics, upstream_client):
    """Relay with authentication disabled."""
    app = create_app(relay_settings, relay_metrics, upstream_client)
    return TestClient(app, raise_server_exceptions=False)


AUTH = {"Authorization": "Bearer abc123"}


class TestAuthorization:
    """Test cases for the bearer token gate."""

    def test_missing_header_rejected(self, client, fake_upstream, relay_metrics):
        """A request without Authorization is rejected before relaying."""
        response = client.post(PUBLISH_ROUTE, content=b"payload")

        assert response.status_code == 401
        assert response.json()["message"] == "Unauthorized"
        assert fake_upstream.requests == []
        assert relay_metrics.registry.get_sample_value(
            "relay_auth_rejections_total", {"reason": "missing"}
        ) == 1.0

    def test_wrong_scheme_rejected(self, client, fake_upstream):
        """Schemes other than Bearer are rejected."""
        response = client.post(
            PUBLISH_ROUTE, content=b"payload", headers={"Authorization": "Basic abc123"}
        )

        assert response.status_code == 401
        assert fake_upstream.requests == []

    def test_lowercase_scheme_rejected(self, client, fake_upstream):
        """The Bearer scheme is matched case-sensitively."""
        response = client.post(
            PUBLISH_ROUTE, content=b"payload", headers={"Authorization": "bearer abc123"}
        )

        assert response.status_code == 401
        assert fake_upstream.requests == []

    def test_unknown_token_rejected(self, client, fake_upstream):
        """Unknown tokens get the same generic 401."""
        response = client.post(
            PUBLISH_ROUTE, content=b"payload", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401
        # same body whatever the reason
        assert response.json()["message"] == "Unauthorized"
        assert fake_upstream.requests == []

    def test_known_token_forwarded(self, client, fake_upstream):
        """A known token is relayed along with its header."""
        response = client.post(PUBLISH_ROUTE, content=b"payload", headers=AUTH)

        assert response.status_code == 200
        assert response.content == b"ok"
        assert len(fake_upstream.requests) == 1
        assert fake_upstream.requests[0].headers["authorization"] == "Bearer abc123"

    def test_auth_disabled_forwards_everything(self, open_client, fake_upstream):
        """Without a gate every request is relayed."""
        response = open_client.post(PUBLISH_ROUTE, content=b"payload")

        assert response.status_code == 200
        assert len(fake_upstream.requests) == 1


class TestRelay:
    """Test cases for forwarding through the pipeline."""

    def test_body_and_headers_forwarded(self, client, fake_upstream):
        """Body and end-to-end headers reach the upstream unchanged."""
        body = b"\x00\x01snappy-framed\xff" * 10

        response = client.post(
            PUBLISH_ROUTE,
            content=body,
            headers={
                **AUTH,
                "Content-Type": "application/x-protobuf",
                "Content-Encoding": "snappy",
                "X-Prometheus-Remote-Write-Version": "0.1.0",
            },
        )

        assert response.status_code == 200
        forwarded = fake_upstream.requests[0]
        assert str(forwarded.url) == UPSTREAM_URL
        assert forwarded.content == body
        assert forwarded.headers["content-encoding"] == "snappy"
        assert forwarded.headers["x-prometheus-remote-write-version"] == "0.1.0"

    def test_upstream_status_passed_through(self, client, fake_upstream):
        """Upstream error statuses reach the caller as-is."""
        fake_upstream.status_code = 400
        fake_upstream.content = b"out of order sample"

        response = client.post(PUBLISH_ROUTE, content=b"payload", headers=AUTH)

        assert response.status_code == 400
        assert response.content == b"out of order sample"

    def test_unreachable_upstream_is_bad_gateway(self, client, fake_upstream):
        """Transport failures are a generic 502 and the relay recovers."""
        fake_upstream.error = httpx.ConnectError("connection refused to 10.0.0.7:9000")

        response = client.post(PUBLISH_ROUTE, content=b"payload", headers=AUTH)

        assert response.status_code == 502
        assert response.json()["message"] == "Bad gateway"
        assert "10.0.0.7" not in response.text

        fake_upstream.error = None
        response = client.post(PUBLISH_ROUTE, content=b"payload", headers=AUTH)
        assert response.status_code == 200

    def test_other_methods_not_routed(self, client, fake_upstream):
        """Only POST is routed to the relay."""
        response = client.get(PUBLISH_ROUTE, headers=AUTH)

        assert response.status_code == 405
        assert fake_upstream.requests == []

    def test_request_is_access_logged_in_metrics(self, client, relay_metrics):
        """Every request is counted by the access log."""
        client.post(PUBLISH_ROUTE, content=b"payload", headers=AUTH)

        assert relay_metrics.registry.get_sample_value(
            "relay_http_requests_total",
            {"method": "POST", "endpoint": PUBLISH_ROUTE, "status_code": "200"},
        ) == 1.0


class TestPolicies:
    """Test cases for the body limit and request timeout."""

    def test_body_at_limit_forwarded(self, client, fake_upstream, relay_settings):
        """A body exactly at the cap is relayed."""
        body = b"x" * relay_settings.max_body_size

        response = client.post(PUBLISH_ROUTE, content=body, headers=AUTH)

        assert response.status_code == 200
        assert fake_upstream.requests[0].content == body

    def test_declared_length_over_limit(self, client, fake_upstream, relay_settings):
        """A declared length over the cap is refused without relaying."""
        body = b"x" * (relay_settings.max_body_size + 1)

        response = client.post(PUBLISH_ROUTE, content=body, headers=AUTH)

        assert response.status_code == 413
        assert fake_upstream.requests == []

    def test_streamed_body_over_limit(self, client, fake_upstream, relay_settings):
        """A chunked body is refused once it streams past the cap."""
        chunk = b"x" * 256
        count = relay_settings.max_body_size // len(chunk) + 2

        def body():
            for _ in range(count):
                yield chunk

        response = client.post(PUBLISH_ROUTE, content=body(), headers=AUTH)

        assert response.status_code == 413
        assert fake_upstream.requests == []

    def test_slow_upstream_times_out(self, relay_metrics, upstream_client, fake_upstream):
        """A relay slower than the request timeout gets a 408."""
        settings = RelaySettings(
            upstream_url=UPSTREAM_URL,
            max_body_size=1024,
            request_timeout_seconds=0.2,
        )
        fake_upstream.delay = 2.0
        app = create_app(settings, relay_metrics, upstream_client, None)
        client = TestClient(app, raise_server_exceptions=False)

        response = client.post(PUBLISH_ROUTE, content=b"payload")

        assert response.status_code == 408
        # cancelled before the upstream recorded the request
        assert fake_upstream.requests == []


class TestMetricsExposition:
    """Test cases for the pull exposition app."""

    def test_metrics_endpoint(self, relay_settings, relay_metrics):
        """The scrape endpoint serves the text exposition."""
        relay_metrics.record_upstream_response(204)
        client = TestClient(create_metrics_app(relay_settings, relay_metrics))

        response = client.get(METRICS_ROUTE)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'relay_upstream_responses_total{status_code="204"} 1.0' in response.text
        assert "relay_build_info" in response.text

    def test_metrics_reflect_relay_traffic(self, client, relay_settings, relay_metrics):
        """Relay telemetry shows up on the scrape endpoint."""
        client.post(PUBLISH_ROUTE, content=b"payload")
        exposition = TestClient(create_metrics_app(relay_settings, relay_metrics))

        response = exposition.get(METRICS_ROUTE)

        assert 'relay_auth_rejections_total{reason="missing"} 1.0' in response.text

    def test_encoding_failure_is_500(self, relay_settings, relay_metrics):
        """An exposition failure is reported as a 500."""
        client = TestClient(create_metrics_app(relay_settings, relay_metrics))

        with patch.object(relay_metrics, "render_text", side_effect=ValueError("bad sample")):
            response = client.get(METRICS_ROUTE)

        assert response.status_code == 500
        assert "unable to encode metrics" in response.text
