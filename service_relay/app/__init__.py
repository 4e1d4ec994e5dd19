"""
Metrics relay service.

Accepts metric submissions over HTTP, optionally checks a static bearer token,
and forwards the payload unchanged to a single upstream time-series endpoint.
The relay's own metrics are exposed for scraping and pushed to a collector.
"""

__version__ = "1.0.0"
