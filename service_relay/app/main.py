"""
Relay service for metric submissions.
"""

from typing import Optional

from fastapi import Depends, Request, Response
from starlette.requests import ClientDisconnect

from shared.base_service import BaseService
from shared.config import RelaySettings
from shared.errors import GatewayError
from shared.metrics import RelayMetrics

from . import __version__
from .adapters.upstream_client import UpstreamClient
from .auth.bearer_tokens import BearerTokenAllower
from .domain.auth_middleware import BearerAuthMiddleware
from .domain.policies import BodyLimitMiddleware, TimeoutMiddleware

PUBLISH_ROUTE = "/publish/metrics"
METRICS_ROUTE = "/metrics"
USER_AGENT = f"metrics-relay/{__version__}"


class RelayService(BaseService):
    """Relays ``POST /publish/metrics`` to the configured upstream."""

    def __init__(self, settings: RelaySettings, metrics: RelayMetrics,
                 upstream_client: UpstreamClient,
                 allower: Optional[BearerTokenAllower] = None):
        self.upstream_client = upstream_client
        self.allower = allower
        super().__init__("relay", settings, metrics, version=__version__)

    def _setup_policies(self):
        # added innermost first; access logging from BaseService wraps both
        self.app.add_middleware(TimeoutMiddleware, timeout=self.settings.request_timeout_seconds)
        self.app.add_middleware(BodyLimitMiddleware, max_body_size=self.settings.max_body_size)

    def _setup_service_routes(self):
        dependencies = []
        if self.allower is not None:
            dependencies.append(Depends(BearerAuthMiddleware(self.allower, self.metrics)))

        @self.app.post(PUBLISH_ROUTE, dependencies=dependencies)
        async def relay_metrics(request: Request):
            """Relay a metrics payload from a client to the upstream TSDB."""
            try:
                body = await request.body()
            except ClientDisconnect as e:
                self.metrics.record_upstream_failure("body_read")
                self.logger.error("Error reading request body", error=str(e))
                raise GatewayError("body_read") from e

            result = await self.upstream_client.relay(
                request.method,
                request.headers.raw,
                body,
            )
            return Response(
                content=result.content,
                status_code=result.status_code,
                media_type=result.content_type,
            )

        self.logger.info(
            "Relay routes configured",
            route=PUBLISH_ROUTE,
            upstream_url=self.upstream_client.upstream_url,
            auth_enabled=self.allower is not None
        )


class MetricsExpositionService(BaseService):
    """Serves the relay's own registry for scraping on a separate address."""

    def __init__(self, settings: RelaySettings, metrics: RelayMetrics):
        super().__init__("relay-metrics", settings, metrics, version=__version__)

    def _setup_middleware(self):
        # scrapes are not access-logged
        pass

    def _setup_service_routes(self):

        @self.app.get(METRICS_ROUTE)
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            try:
                content, content_type = self.metrics.render_text()
            except Exception as e:
                self.logger.error("Unable to encode metrics", error=str(e))
                return Response(
                    content=f"unable to encode metrics: {e}",
                    status_code=500,
                    media_type="text/plain"
                )
            return Response(content=content, media_type=content_type)


def create_app(settings: Optional[RelaySettings] = None,
               metrics: Optional[RelayMetrics] = None,
               upstream_client: Optional[UpstreamClient] = None,
               allower: Optional[BearerTokenAllower] = None):
    """Build the relay FastAPI app with explicit collaborators."""
    settings = settings or RelaySettings()
    metrics = metrics or RelayMetrics("relay", version=__version__)
    if upstream_client is None:
        upstream_client = UpstreamClient(
            settings.upstream_url,
            metrics,
            pool_max_idle_per_host=settings.pool_max_idle_per_host,
            timeout=settings.upstream_timeout_seconds,
            user_agent=USER_AGENT,
        )
    return RelayService(settings, metrics, upstream_client, allower).app


def create_metrics_app(settings: RelaySettings, metrics: RelayMetrics):
    return MetricsExpositionService(settings, metrics).app
