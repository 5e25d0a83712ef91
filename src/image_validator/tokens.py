"""In-memory bearer token cache for registry authentication.

Registry tokens are scoped to one repository, so entries are keyed by
``(registry, repository)``. Entries expire 30 seconds before the lifetime the
token endpoint advertises. ``discard()`` drops a token the registry rejected
and ``clear()`` drops them all.
The cache is unbounded: its key space is the set of repositories actually
requested by admitted workloads.

Concurrent coroutines may race on the same key; the last successful write
wins. A lost write costs at most one extra token request.

Example:
    >>> cache = TokenCache()
    >>> cache.put("ghcr.io", "org/app", "abc", expires_in=300)
    >>> cache.get("ghcr.io", "org/app")
    'abc'
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_TOKEN_LIFETIME_SECONDS = 300
"""Lifetime assumed when the token endpoint omits ``expires_in``."""

EXPIRY_MARGIN_SECONDS = 30
"""Safety margin subtracted from the advertised token lifetime."""


@dataclass(frozen=True)
class BearerToken:
    """A cached bearer token.

    Attributes:
        token: The opaque token value.
        expires_at: Monotonic clock time after which the token is stale.
        actions: Scope actions the token was requested for (e.g. "pull").
    """

    token: str
    expires_at: float
    actions: frozenset[str] = frozenset({"pull"})

    def is_valid(self, now: float) -> bool:
        """Check whether the token is still usable at ``now``."""
        return now < self.expires_at

    def covers(self, actions: frozenset[str]) -> bool:
        """Check whether the token was granted all of ``actions``."""
        return actions <= self.actions


class TokenCache:
    """Bearer token cache owned by a single RegistryClient."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize an empty cache.

        Args:
            clock: Monotonic clock, injectable for tests.
        """
        self._clock = clock
        self._tokens: dict[tuple[str, str], BearerToken] = {}

    def get(
        self,
        registry: str,
        repository: str,
        actions: frozenset[str] = frozenset({"pull"}),
    ) -> str | None:
        """Return a valid cached token covering ``actions``, if any."""
        entry = self._tokens.get((registry, repository))
        if entry is None or not entry.is_valid(self._clock()) or not entry.covers(actions):
            return None
        return entry.token

    def put(
        self,
        registry: str,
        repository: str,
        token: str,
        expires_in: float | None = None,
        actions: frozenset[str] = frozenset({"pull"}),
    ) -> BearerToken:
        """Store a token, computing its expiry with the safety margin."""
        lifetime = expires_in if expires_in and expires_in > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
        entry = BearerToken(
            token=token,
            expires_at=self._clock() + lifetime - EXPIRY_MARGIN_SECONDS,
            actions=actions,
        )
        self._tokens[(registry, repository)] = entry
        return entry

    def discard(self, registry: str, repository: str) -> None:
        """Drop the token for one repository, e.g. after the registry rejected it."""
        self._tokens.pop((registry, repository), None)

    def clear(self) -> None:
        """Drop every cached token (used for credential rotation)."""
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)


__all__ = [
    "DEFAULT_TOKEN_LIFETIME_SECONDS",
    "EXPIRY_MARGIN_SECONDS",
    "BearerToken",
    "TokenCache",
]
