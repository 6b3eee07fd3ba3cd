"""Key layout and the gateway contract shared by every key-value backend.

All entities live in one flat namespace under composite string keys. The
prefixes and metadata field names below are part of the storage format and
must not change:

    client:<clientId>                          {name, secret}
    user:<clientId>:<userId>                   {username?, emailAddresses?, emailVerified}
    username:<clientId>:<username>             -
    email:<clientId>:<email>                   {emailVerified}
    <kind>code:<clientId>:<userId>             -
    session:<clientId>:<userId>:<sessionId>    {createdAt, lastUsedAt}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

CLIENT_PREFIX = "client"
USER_PREFIX = "user"
USERNAME_PREFIX = "username"
EMAIL_PREFIX = "email"
SESSION_PREFIX = "session"
CODE_SUFFIX = "code"

Metadata = Dict[str, Any]


@dataclass
class StoredValue:
    value: Optional[str]
    metadata: Optional[Metadata]


@dataclass
class KeyEntry:
    name: str
    metadata: Optional[Metadata]


class KVStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def get_with_metadata(self, key: str) -> StoredValue: ...

    async def put(
        self,
        key: str,
        value: str,
        *,
        metadata: Optional[Metadata] = None,
        expiration_ttl: Optional[int] = None,
        only_if_absent: bool = False,
    ) -> bool: ...

    async def delete(self, key: str) -> None: ...

    def list(self, prefix: str) -> AsyncIterator[KeyEntry]: ...

    async def close(self) -> None: ...


async def collect(store: KVStore, prefix: str) -> List[KeyEntry]:
    """Drain a lazy prefix listing into a list."""
    return [entry async for entry in store.list(prefix)]


def client_key(client_id: str) -> str:
    return f"{CLIENT_PREFIX}:{client_id}"


def user_key(client_id: str, user_id: str) -> str:
    return f"{USER_PREFIX}:{client_id}:{user_id}"


def user_prefix(client_id: str) -> str:
    return f"{USER_PREFIX}:{client_id}:"


def username_key(client_id: str, username: str) -> str:
    return f"{USERNAME_PREFIX}:{client_id}:{username}"


def email_key(client_id: str, email: str) -> str:
    return f"{EMAIL_PREFIX}:{client_id}:{email}"


def code_key(kind: str, client_id: str, user_id: str) -> str:
    return f"{kind}{CODE_SUFFIX}:{client_id}:{user_id}"


def session_key(client_id: str, user_id: str, session_id: str) -> str:
    return f"{SESSION_PREFIX}:{client_id}:{user_id}:{session_id}"


def session_prefix(client_id: str, user_id: str) -> str:
    # Trailing separator keeps user "ab" from matching sessions of user "abc"
    return f"{SESSION_PREFIX}:{client_id}:{user_id}:"


def strip_prefix(key: str, prefix: str) -> str:
    return key[len(prefix):] if key.startswith(prefix) else key
