"""Caller authorization for the relay."""

from .bearer_tokens import BearerTokenAllower

__all__ = ["BearerTokenAllower"]
