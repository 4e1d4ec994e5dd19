"""
Unit tests for the upstream relay client.
"""

import pytest
import httpx

from shared.errors import GatewayError
from service_relay.app.adapters.upstream_client import (
    translate_headers,
    translate_method,
    UpstreamClient,
)
from .conftest import UPSTREAM_URL


class TestTranslateMethod:
    """Test cases for translate_method."""

    @pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE", "HEAD"])
    def test_supported(self, method):
        """The five relayed methods map onto themselves."""
        assert translate_method(method) == method

    def test_lowercase_is_normalised(self):
        """Method names are upper-cased."""
        assert translate_method("post") == "POST"

    @pytest.mark.parametrize("method", ["PATCH", "OPTIONS", "CONNECT", "TRACE"])
    def test_unsupported_is_programming_error(self, method):
        """Any other method is an assertion failure."""
        with pytest.raises(AssertionError):
            translate_method(method)


class TestTranslateHeaders:
    """Test cases for translate_headers."""

    def test_valid_headers_copied(self):
        """Well-formed end-to-end headers are copied in order."""
        headers = [
            (b"content-type", b"application/x-protobuf"),
            (b"content-encoding", b"snappy"),
            (b"authorization", b"Bearer abc123"),
        ]

        assert translate_headers(headers) == headers

    def test_str_headers_become_bytes(self):
        """String headers are encoded as ASCII bytes."""
        assert translate_headers([("X-Scope-OrgID", "tenant-1")]) == [
            (b"X-Scope-OrgID", b"tenant-1")
        ]

    def test_invalid_entries_dropped_individually(self):
        """Bad names or values drop only their own entry."""
        headers = [
            (b"bad name", b"value"),
            (b"x-ok", b"fine"),
            (b"x-control", b"line\x00break"),
            ("x-unicode", "café"),
            (b"x-also-ok", b"\tindented"),
        ]

        assert translate_headers(headers) == [
            (b"x-ok", b"fine"),
            (b"x-also-ok", b"\tindented"),
        ]

    def test_hop_by_hop_dropped(self):
        """Connection-level headers, host and length are not forwarded."""
        headers = [
            (b"host", b"relay.local"),
            (b"connection", b"keep-alive"),
            (b"transfer-encoding", b"chunked"),
            (b"content-length", b"10"),
            (b"x-prometheus-remote-write-version", b"0.1.0"),
        ]

        assert translate_headers(headers) == [
            (b"x-prometheus-remote-write-version", b"0.1.0"),
        ]

    def test_duplicates_preserved(self):
        """Repeated header names are all forwarded."""
        headers = [(b"x-tag", b"a"), (b"x-tag", b"b")]
        assert translate_headers(headers) == headers

    def test_idempotent(self):
        """Translating a translated list changes nothing."""
        headers = [
            (b"x-ok", b"fine"),
            (b"bad name", b"value"),
            (b"Connection", b"close"),
            ("x-str", "value"),
        ]

        once = translate_headers(headers)
        assert translate_headers(once) == once


class TestUpstreamClient:
    """Test cases for UpstreamClient.relay."""

    @pytest.mark.asyncio
    async def test_body_forwarded_byte_for_byte(self, upstream_client, fake_upstream):
        """The body reaches the upstream URL unchanged."""
        body = bytes(range(256)) * 4

        result = await upstream_client.relay(
            "POST",
            [(b"content-type", b"application/x-protobuf"), (b"host", b"relay.local")],
            body,
        )

        assert result.status_code == 200
        assert result.content == b"ok"
        assert len(fake_upstream.requests) == 1

        forwarded = fake_upstream.requests[0]
        assert forwarded.method == "POST"
        assert str(forwarded.url) == UPSTREAM_URL
        assert forwarded.content == body
        assert forwarded.headers["content-type"] == "application/x-protobuf"
        assert forwarded.headers["host"] == "mimir.test"
        assert forwarded.headers["user-agent"] == "metrics-relay"

        await upstream_client.close()

    @pytest.mark.asyncio
    async def test_upstream_error_status_passed_through(self, upstream_client, fake_upstream,
                                                        relay_metrics):
        """Non-2xx upstream responses are returned, not raised."""
        fake_upstream.status_code = 503
        fake_upstream.content = b"ingester unavailable"

        result = await upstream_client.relay("POST", [], b"payload")

        assert result.status_code == 503
        assert result.content == b"ingester unavailable"
        assert result.content_type == "text/plain"
        assert relay_metrics.registry.get_sample_value(
            "relay_upstream_responses_total", {"status_code": "503"}
        ) == 1.0

        await upstream_client.close()

    @pytest.mark.asyncio
    async def test_connect_error_becomes_gateway_error(self, upstream_client, fake_upstream,
                                                       relay_metrics):
        """Transport failures raise GatewayError without upstream detail."""
        fake_upstream.error = httpx.ConnectError("connection refused to 10.0.0.7:9000")

        with pytest.raises(GatewayError) as exc_info:
            await upstream_client.relay("POST", [], b"payload")

        error = exc_info.value
        assert error.status_code == 502
        assert error.reason == "connect"
        assert "10.0.0.7" not in error.message
        assert relay_metrics.registry.get_sample_value(
            "relay_upstream_failures_total", {"reason": "connect"}
        ) == 1.0

        await upstream_client.close()

    @pytest.mark.asyncio
    async def test_timeout_reason(self, upstream_client, fake_upstream):
        """Upstream timeouts are classified as such."""
        fake_upstream.error = httpx.ReadTimeout("read timed out")

        with pytest.raises(GatewayError) as exc_info:
            await upstream_client.relay("POST", [], b"payload")

        assert exc_info.value.reason == "timeout"

        await upstream_client.close()

    @pytest.mark.asyncio
    async def test_client_reusable_after_failure(self, upstream_client, fake_upstream):
        """A failed relay does not poison the pooled client."""
        fake_upstream.error = httpx.ConnectError("refused")
        with pytest.raises(GatewayError):
            await upstream_client.relay("POST", [], b"first")

        fake_upstream.error = None
        result = await upstream_client.relay("POST", [], b"second")

        assert result.status_code == 200
        assert fake_upstream.requests[-1].content == b"second"

        await upstream_client.close()
