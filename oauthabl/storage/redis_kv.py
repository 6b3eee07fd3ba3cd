from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from oauthabl.logging import get_logger
from oauthabl.storage.errors import StoreUnavailable
from oauthabl.storage.kv import KeyEntry, Metadata, StoredValue

logger = get_logger(__name__)

_GLOB_SPECIALS = "\\*?[]"


def _escape_glob(prefix: str) -> str:
    """Escape a literal prefix for use in a SCAN MATCH pattern."""
    return "".join("\\" + ch if ch in _GLOB_SPECIALS else ch for ch in prefix)


def _namespace(key: str) -> str:
    # Keys embed usernames and addresses; logs only carry the key family
    return key.split(":", 1)[0]


class RedisKV:
    """Key-value gateway backed by Redis.

    Each key holds a JSON envelope ``{"value": ..., "metadata": ...}`` so a
    prefix listing can return metadata without a second lookup per key. Every
    command is bounded by ``operation_timeout``; timeouts, transport errors and
    undecodable envelopes all surface as ``StoreUnavailable``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        page_size: int = 100,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.page_size = page_size
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )

    async def _call(self, awaitable: Awaitable[Any], *, op: str, key: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "kv_timeout",
                op=op,
                namespace=_namespace(key),
                timeout=self.operation_timeout,
            )
            raise StoreUnavailable("store operation timed out", {"op": op}) from exc
        except (RedisError, OSError) as exc:
            logger.error(
                "kv_unavailable", op=op, namespace=_namespace(key), error=str(exc)
            )
            raise StoreUnavailable("store unavailable", {"op": op}) from exc

    @staticmethod
    def _encode(value: str, metadata: Optional[Metadata]) -> str:
        try:
            return json.dumps({"value": value, "metadata": metadata})
        except (TypeError, ValueError) as exc:
            raise StoreUnavailable("metadata is not serializable") from exc

    @staticmethod
    def _decode(key: str, raw: Optional[str]) -> StoredValue:
        if raw is None:
            return StoredValue(value=None, metadata=None)
        try:
            envelope = json.loads(raw)
            return StoredValue(
                value=envelope.get("value"), metadata=envelope.get("metadata")
            )
        except (json.JSONDecodeError, AttributeError) as exc:
            logger.error("kv_corrupt_record", namespace=_namespace(key))
            raise StoreUnavailable("stored record is not decodable") from exc

    async def get(self, key: str) -> Optional[str]:
        return (await self.get_with_metadata(key)).value

    async def get_with_metadata(self, key: str) -> StoredValue:
        raw = await self._call(self.client.get(key), op="get", key=key)
        return self._decode(key, raw)

    async def put(
        self,
        key: str,
        value: str,
        *,
        metadata: Optional[Metadata] = None,
        expiration_ttl: Optional[int] = None,
        only_if_absent: bool = False,
    ) -> bool:
        payload = self._encode(value, metadata)
        written = await self._call(
            self.client.set(key, payload, ex=expiration_ttl, nx=only_if_absent),
            op="put",
            key=key,
        )
        return bool(written)

    async def delete(self, key: str) -> None:
        await self._call(self.client.delete(key), op="delete", key=key)

    async def list(self, prefix: str) -> AsyncIterator[KeyEntry]:
        pattern = _escape_glob(prefix) + "*"
        cursor = 0
        # SCAN may return a key more than once over a full iteration
        seen: set[str] = set()
        while True:
            cursor, names = await self._call(
                self.client.scan(cursor=cursor, match=pattern, count=self.page_size),
                op="scan",
                key=prefix,
            )
            names = sorted(set(names) - seen)
            if names:
                seen.update(names)
                raws = await self._call(self.client.mget(names), op="mget", key=prefix)
                for name, raw in zip(names, raws):
                    # Deleted between SCAN and MGET
                    if raw is None:
                        continue
                    yield KeyEntry(name=name, metadata=self._decode(name, raw).metadata)
            if int(cursor) == 0:
                break

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
