"""
Base service class for the metrics relay.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import time

from shared.config import RelaySettings
from shared.logging import get_logger, set_request_id, clear_context
from shared.metrics import RelayMetrics
from shared.errors import RelayError


class BaseService:
    """Base service class with common functionality.

    Subclasses add their policies in ``_setup_policies`` and their routes in
    ``_setup_service_routes``. Access logging is always the outermost layer so
    every outcome, including rejections produced by inner policies, is logged.
    """

    def __init__(self, service_name: str, settings: RelaySettings, metrics: RelayMetrics,
                 version: str = "0.0.0"):
        self.service_name = service_name
        self.settings = settings
        self.metrics = metrics
        self.version = version
        self.logger = get_logger(service_name)

        self.app = self._create_app()

        self._setup_policies()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            version=self.version,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

    def _setup_policies(self):
        """Install request policies. Override in subclasses."""

    def _setup_middleware(self):
        """Set up access logging middleware."""

        @self.app.middleware("http")
        async def log_access(request: Request, call_next):
            start_time = time.time()
            set_request_id(request.headers.get("x-request-id"))
            status_code = 500
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                duration = time.time() - start_time

                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=request.url.path,
                    status_code=status_code,
                    duration=duration
                )

                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=round(duration * 1000, 2)
                )
                clear_context()

    def _setup_routes(self):
        """Set up error handlers and service routes."""

        @self.app.exception_handler(RelayError)
        async def relay_exception_handler(request: Request, exc: RelayError):
            """Handle RelayError with its own status and a generic message."""
            self.logger.warning(
                "Request rejected",
                code=exc.code,
                status_code=exc.status_code,
                path=request.url.path
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump()
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error"
                }
            )

        self._setup_service_routes()

    def _setup_service_routes(self):
        """Register service routes. Override in subclasses."""
