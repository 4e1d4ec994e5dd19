"""
Shared utilities for the metrics relay.

This package aggregates common building blocks consumed by the relay service:

- config: Settings via pydantic-settings and YAML files
- logging: Structured logging with trace correlation
- metrics: Prometheus registry and relay telemetry
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- base_service: FastAPI app skeleton with error handlers and access logging

Do not import from service_* packages into shared/.
"""
