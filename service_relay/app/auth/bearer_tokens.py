"""
Static bearer token allow-list.
"""

from typing import FrozenSet, Iterable, Optional

from shared.config import load_bearer_tokens
from shared.logging import get_logger

logger = get_logger("relay.auth.bearer_tokens")


class BearerTokenAllower:
    """Answers whether a presented token is one of the configured tokens.

    The token set is fixed at construction. Lookups are exact and
    case-sensitive.
    """

    def __init__(self, tokens: Iterable[str]):
        self._tokens: FrozenSet[str] = frozenset(tokens)

    @classmethod
    def from_path(cls, path: Optional[str]) -> Optional["BearerTokenAllower"]:
        """Build an allower from a token file.

        Returns ``None`` when no path is given, which disables authorization.
        A path that cannot be read or parsed raises ``ConfigError`` rather than
        silently turning authorization off.
        """
        if path is None:
            return None

        config = load_bearer_tokens(path)
        allower = cls(item.bearer_token for item in config.items)
        logger.info(
            "Loaded bearer tokens",
            path=path,
            count=len(allower),
            names=[item.name for item in config.items]
        )
        return allower

    def allowed(self, token: str) -> bool:
        return token in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
