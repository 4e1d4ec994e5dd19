"""
Bearer token check for the publish route.
"""

from fastapi import Request

from shared.errors import AuthorizationError
from shared.logging import get_logger
from shared.metrics import RelayMetrics
from ..auth.bearer_tokens import BearerTokenAllower

BEARER_PREFIX = "Bearer "


class BearerAuthMiddleware:
    """Rejects requests whose ``Authorization`` header is not a known bearer token.

    Used as a route dependency so it runs before the relay handler reads the
    body. The rejection never says which part of the check failed.
    """

    def __init__(self, allower: BearerTokenAllower, metrics: RelayMetrics):
        self.allower = allower
        self.metrics = metrics
        self.logger = get_logger("relay.auth_middleware")

    async def __call__(self, request: Request) -> None:
        self.authenticate_request(request)

    def authenticate_request(self, request: Request) -> None:
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            self._reject("missing")

        if not auth_header.startswith(BEARER_PREFIX):
            self._reject("scheme")

        token = auth_header[len(BEARER_PREFIX):]
        if not self.allower.allowed(token):
            self._reject("unknown")

    def _reject(self, reason: str) -> None:
        self.metrics.record_auth_rejection(reason)
        self.logger.warning("Bearer token rejected", reason=reason)
        raise AuthorizationError(reason)
