from __future__ import annotations

import hmac
import json
import secrets
from typing import Any, List, Optional

from oauthabl.logging import get_logger
from oauthabl.service.errors import AuthenticationError, NotFoundError, ServerError
from oauthabl.storage.errors import StoreUnavailable
from oauthabl.storage.kv import CLIENT_PREFIX, KVStore, client_key, collect, strip_prefix
from oauthabl.storage.models import Client

logger = get_logger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "secret"})


def _decode_client(raw: str) -> Client:
    try:
        return Client.from_value(json.loads(raw))
    except (json.JSONDecodeError, KeyError, TypeError) as exc:
        raise ServerError("client record is corrupt") from exc


class ClientRegistry:
    """CRUD over ``client:<clientId>`` records."""

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def create(self, name: str, **attributes: Any) -> Client:
        for key in _IMMUTABLE_FIELDS:
            attributes.pop(key, None)
        client = Client(
            id=secrets.token_urlsafe(16),
            secret=secrets.token_urlsafe(32),
            name=name,
            attributes=attributes,
        )
        await self._save(client)
        logger.info("client_created", client_id=client.id)
        return client

    async def get(self, client_id: str) -> Client:
        raw = await self.store.get(client_key(client_id))
        if raw is None:
            raise NotFoundError("not found")
        return _decode_client(raw)

    async def list(self) -> List[Client]:
        prefix = f"{CLIENT_PREFIX}:"
        clients = []
        for entry in await collect(self.store, prefix):
            metadata = entry.metadata or {}
            clients.append(
                Client(
                    id=strip_prefix(entry.name, prefix),
                    secret=metadata.get("secret", ""),
                    name=metadata.get("name", ""),
                )
            )
        return clients

    async def update(self, client_id: str, **changes: Any) -> Client:
        client = await self.get(client_id)
        for key, value in changes.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            if key == "name":
                client.name = value
            else:
                client.attributes[key] = value
        await self._save(client)
        logger.info("client_updated", client_id=client_id, fields=sorted(changes))
        return client

    async def delete(self, client_id: str) -> None:
        await self.get(client_id)
        await self.store.delete(client_key(client_id))
        logger.info("client_deleted", client_id=client_id)

    async def _save(self, client: Client) -> None:
        await self.store.put(
            client_key(client.id),
            json.dumps(client.to_value()),
            metadata=client.to_metadata(),
        )


class ClientAuthenticator:
    """Gatekeeper for every user-scoped operation of a client.

    Secrets are compared in constant time. An unknown client is compared
    against a throwaway secret so the deny path costs the same whether or not
    the id exists, and the error never says which part was wrong. Store
    failures deny with ``ServerError`` rather than letting the request through.
    """

    def __init__(self, store: KVStore) -> None:
        self.store = store
        self._decoy_secret = secrets.token_urlsafe(32)

    async def authenticate(self, client_id: str, presented_secret: Optional[str]) -> Client:
        try:
            raw = await self.store.get(client_key(client_id))
        except StoreUnavailable as exc:
            logger.error("client_auth_store_failed", client_id=client_id, error=exc.message)
            raise ServerError("internal server error") from exc

        client = _decode_client(raw) if raw is not None else None
        expected = client.secret if client else self._decoy_secret
        presented = presented_secret or ""
        matches = hmac.compare_digest(presented.encode(), expected.encode())
        if client is None or not presented_secret or not matches:
            logger.warning("client_auth_denied", client_id=client_id)
            raise AuthenticationError("invalid client credentials")
        return client

    async def is_allowed(self, client_id: str, presented_secret: Optional[str]) -> bool:
        try:
            await self.authenticate(client_id, presented_secret)
        except AuthenticationError:
            return False
        return True
