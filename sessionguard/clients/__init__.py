"""
SessionGuard -- External Collaborators

The remote session oracle and the local persistence layers.
"""

from sessionguard.clients.oracle import (
    HttpSessionOracle,
    InMemorySessionOracle,
    ProviderError,
    SessionOracle,
    StoredTokenSource,
    create_session_oracle,
)
from sessionguard.clients.storage import (
    CredentialJar,
    HttpxCookieJar,
    InMemoryCredentialJar,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    KeyValueStore,
)

__all__ = [
    "SessionOracle",
    "HttpSessionOracle",
    "InMemorySessionOracle",
    "ProviderError",
    "StoredTokenSource",
    "create_session_oracle",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "CredentialJar",
    "InMemoryCredentialJar",
    "HttpxCookieJar",
]
