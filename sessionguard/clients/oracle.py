"""
SessionGuard -- Remote Session Oracle Clients

Adapters over the remote authentication provider. The guard only needs two
operations from it: "what is the current session?" and "revoke it".

The oracle is untrusted with respect to latency and availability. Every
transport or protocol failure surfaces as ProviderError; a provider that
answers "not authenticated" is a normal None result, not an error.

Strategies:
  - memory: scriptable in-process oracle (development, tests)
  - http:   GoTrue-compatible REST API (/auth/v1/user, /auth/v1/logout)
"""

from __future__ import annotations

import asyncio
import base64
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from sessionguard.primitives.session import Session

if TYPE_CHECKING:
    from sessionguard.clients.storage import KeyValueStore
    from sessionguard.config import OracleConfig

logger = structlog.get_logger("sessionguard.clients.oracle")

# Async callable returning the bearer token the client currently holds
TokenSource = Callable[[], Awaitable[str | None]]

# Status codes meaning "the provider does not recognise this session"
_UNAUTHENTICATED_STATUSES: frozenset[int] = frozenset({401, 403})
# Status codes meaning "there is nothing left to revoke"
_ALREADY_REVOKED_STATUSES: frozenset[int] = frozenset({401, 403, 404})


class ProviderError(RuntimeError):
    """The session provider could not be reached or answered unexpectedly."""


class SessionOracle(ABC):
    """Abstract interface to the remote session provider."""

    @abstractmethod
    async def get_current_session(self) -> Session | None:
        """Return the provider's current session, or None when there is none."""
        ...

    @abstractmethod
    async def revoke_session(self, scope: str = "global") -> None:
        """End the session server-side. Raises ProviderError on failure."""
        ...

    async def close(self) -> None:
        """Clean up resources."""
        return None


# ─── Token Source ─────────────────────────────────────────────────


class StoredTokenSource:
    """
    Reads the access token the auth SDK persisted in a key-value store.

    The stored value is the SDK's JSON session blob; the token lives at
    ``access_token`` (or under ``currentSession`` for older SDK versions).
    """

    def __init__(self, store: KeyValueStore, key: str) -> None:
        self._store = store
        self._key = key

    async def __call__(self) -> str | None:
        raw = await self._store.get(self._key)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("stored_session_unparsable", key=self._key)
            return None
        if not isinstance(payload, dict):
            return None
        if isinstance(payload.get("currentSession"), dict):
            payload = payload["currentSession"]
        token = payload.get("access_token")
        return token if isinstance(token, str) and token else None


def token_expiry(token: str) -> datetime | None:
    """Read the ``exp`` claim of a JWT without verifying it."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except ValueError:
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


# ─── In-Memory Oracle ─────────────────────────────────────────────


class InMemorySessionOracle(SessionOracle):
    """
    Scriptable in-process oracle.

    Holds one session (or none). Failures can be queued for either
    operation, and ``gate`` can hold lookups open to simulate latency.
    Tracks how many lookups were ever outstanding at once.
    """

    def __init__(self, session: Session | None = None) -> None:
        self.session = session
        self.gate: asyncio.Event | None = None
        self.get_calls: int = 0
        self.revoke_calls: int = 0
        self.max_in_flight: int = 0
        self._in_flight: int = 0
        self._get_failures: list[Exception] = []
        self._revoke_failures: list[Exception] = []

    def fail_next_get(self, error: Exception | None = None, times: int = 1) -> None:
        for _ in range(times):
            self._get_failures.append(error or ProviderError("provider unavailable"))

    def fail_next_revoke(self, error: Exception | None = None) -> None:
        self._revoke_failures.append(error or ProviderError("revoke failed"))

    async def get_current_session(self) -> Session | None:
        self.get_calls += 1
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self._get_failures:
                raise self._get_failures.pop(0)
            return self.session
        finally:
            self._in_flight -= 1

    async def revoke_session(self, scope: str = "global") -> None:
        self.revoke_calls += 1
        if self._revoke_failures:
            raise self._revoke_failures.pop(0)
        self.session = None


# ─── HTTP Oracle ──────────────────────────────────────────────────


class HttpSessionOracle(SessionOracle):
    """
    Session oracle backed by a GoTrue-compatible auth REST API.

    The wrapped httpx.AsyncClient's cookie jar holds the ambient credential
    artifacts attached to every outbound request.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        token_source: TokenSource,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._token_source = token_source
        self._client = client or httpx.AsyncClient(base_url=url, timeout=timeout_s)
        self._logger = logger.bind(component="http_oracle")

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def _headers(self, token: str) -> dict[str, str]:
        return {"apikey": self._api_key, "Authorization": f"Bearer {token}"}

    async def get_current_session(self) -> Session | None:
        token = await self._token_source()
        if not token:
            return None

        try:
            response = await self._client.get("/auth/v1/user", headers=self._headers(token))
        except httpx.HTTPError as exc:
            raise ProviderError(f"session lookup failed: {type(exc).__name__}") from exc

        if response.status_code in _UNAUTHENTICATED_STATUSES:
            return None
        if response.status_code >= 400:
            raise ProviderError(f"session lookup returned HTTP {response.status_code}")

        try:
            body: Any = response.json()
        except ValueError as exc:
            raise ProviderError("session lookup returned an unparsable body") from exc

        subject_id = body.get("id") if isinstance(body, dict) else None
        if not subject_id:
            raise ProviderError("session lookup returned no subject id")

        return Session(
            subject_id=str(subject_id),
            expires_at=token_expiry(token),
            access_token=token,
        )

    async def revoke_session(self, scope: str = "global") -> None:
        token = await self._token_source()
        if not token:
            self._logger.info("revoke_skipped_no_token")
            return

        try:
            response = await self._client.post(
                "/auth/v1/logout",
                params={"scope": scope},
                headers=self._headers(token),
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"revoke failed: {type(exc).__name__}") from exc

        if response.status_code in _ALREADY_REVOKED_STATUSES:
            self._logger.info("revoke_already_ended", status=response.status_code)
            return
        if response.status_code >= 400:
            raise ProviderError(f"revoke returned HTTP {response.status_code}")

    async def close(self) -> None:
        await self._client.aclose()


def create_session_oracle(
    config: OracleConfig,
    token_source: TokenSource | None = None,
) -> SessionOracle:
    """Factory to create the configured session oracle."""
    if config.strategy == "memory":
        return InMemorySessionOracle()
    elif config.strategy == "http":
        if not config.url:
            raise ValueError("HTTP oracle strategy requires oracle.url in config")
        if token_source is None:
            raise ValueError("HTTP oracle strategy requires a token source")
        return HttpSessionOracle(
            url=config.url,
            api_key=config.api_key,
            token_source=token_source,
            timeout_s=config.timeout_s,
        )
    else:
        raise ValueError(f"Unknown oracle strategy: {config.strategy}")
