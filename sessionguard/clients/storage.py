"""
SessionGuard -- Local Persistence Layers

Three independent places where credential material can linger on a client:

  - ephemeral store: per-process key-value memory (lost on restart)
  - durable store:   key-value file that survives restarts
  - ambient jar:     credential artifacts the HTTP runtime attaches to every
                     outbound request (cookies); never read explicitly

These layers are shared with the rest of the application. The guard only
ever deletes keys inside the credential namespace; broad clears exist for
the explicit last-resort paths.
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
import structlog

logger = structlog.get_logger("sessionguard.clients.storage")


# ─── Key-Value Stores ─────────────────────────────────────────────


class KeyValueStore(ABC):
    """Abstract string key-value store."""

    name: str = "store"

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """Keys starting with ``prefix`` (all keys for the empty prefix)."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete one key. Removing a missing key is not an error."""
        ...

    @abstractmethod
    async def clear(self) -> None: ...


class InMemoryKeyValueStore(KeyValueStore):
    """Ephemeral per-process store."""

    def __init__(self, name: str = "ephemeral", initial: dict[str, str] | None = None) -> None:
        self.name = name
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def list_keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class JsonFileKeyValueStore(KeyValueStore):
    """
    Durable store persisted as a single JSON object on disk.

    Loaded lazily on first access; every mutation rewrites the file through a
    temporary sibling so a crash never leaves a half-written store.
    """

    def __init__(self, path: str | Path, name: str = "durable") -> None:
        self.name = name
        self._path = Path(path)
        self._data: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._data is None:
            if self._path.exists():
                with open(self._path) as f:
                    raw = json.load(f)
                self._data = {str(k): str(v) for k, v in raw.items()} if isinstance(raw, dict) else {}
            else:
                self._data = {}
        return self._data

    def _flush(self) -> None:
        data = self._load()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)

    async def get(self, key: str) -> str | None:
        return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        self._load()[key] = value
        self._flush()

    async def list_keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._load() if k.startswith(prefix)]

    async def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._flush()

    async def clear(self) -> None:
        self._load().clear()
        self._flush()


# ─── Ambient Credential Artifacts ─────────────────────────────────


class CredentialJar(ABC):
    """Ambient credential artifacts attached to outbound requests."""

    name: str = "ambient"

    @abstractmethod
    async def names(self) -> list[str]: ...

    @abstractmethod
    async def expire(self, name: str) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...


class InMemoryCredentialJar(CredentialJar):
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._artifacts: dict[str, str] = dict(initial or {})

    async def names(self) -> list[str]:
        return list(self._artifacts)

    async def expire(self, name: str) -> None:
        self._artifacts.pop(name, None)

    async def clear(self) -> None:
        self._artifacts.clear()

    def snapshot(self) -> dict[str, str]:
        return dict(self._artifacts)


class HttpxCookieJar(CredentialJar):
    """Cookies held by an httpx client, removed across every domain and path."""

    def __init__(self, cookies: httpx.Cookies) -> None:
        self._cookies = cookies

    async def names(self) -> list[str]:
        return sorted({cookie.name for cookie in self._cookies.jar})

    async def expire(self, name: str) -> None:
        self._cookies.delete(name)

    async def clear(self) -> None:
        self._cookies.clear()
