from __future__ import annotations

import asyncio
import json
import secrets
from typing import List, Optional

from oauthabl.logging import get_logger
from oauthabl.service.errors import NotFoundError, ServerError
from oauthabl.storage.errors import StoreUnavailable
from oauthabl.storage.kv import (
    KVStore,
    Metadata,
    collect,
    session_key,
    session_prefix,
    strip_prefix,
)
from oauthabl.storage.models import ArchiveResult, Session, from_iso, utcnow

logger = get_logger(__name__)


class SessionManager:
    """Issues, refreshes, lists and archives sessions per (client, user).

    The session id is the capability itself; there is no separate secret, so
    deleting the record is what revokes it.
    """

    def __init__(
        self,
        store: KVStore,
        *,
        session_id_bytes: int = 32,
        archive_concurrency: int = 8,
    ) -> None:
        self.store = store
        self.session_id_bytes = session_id_bytes
        self.archive_concurrency = archive_concurrency

    @staticmethod
    def _from_metadata(
        client_id: str,
        user_id: str,
        session_id: str,
        metadata: Optional[Metadata],
        rotations: Optional[int] = None,
    ) -> Session:
        metadata = metadata or {}
        try:
            created_at = from_iso(metadata["createdAt"])
            last_used_at = from_iso(metadata.get("lastUsedAt") or metadata["createdAt"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error(
                "session_metadata_corrupt", client_id=client_id, user_id=user_id
            )
            raise ServerError("session record is corrupt") from exc
        return Session(
            id=session_id,
            client_id=client_id,
            user_id=user_id,
            created_at=created_at,
            last_used_at=last_used_at,
            rotations=rotations,
        )

    async def _write(self, session: Session) -> None:
        await self.store.put(
            session_key(session.client_id, session.user_id, session.id),
            json.dumps(session.to_value()),
            metadata=session.to_metadata(),
        )

    async def _mint(self, client_id: str, user_id: str) -> Session:
        now = utcnow()
        session = Session(
            id=secrets.token_urlsafe(self.session_id_bytes),
            client_id=client_id,
            user_id=user_id,
            created_at=now,
            last_used_at=now,
            rotations=0,
        )
        await self._write(session)
        logger.info("session_created", client_id=client_id, user_id=user_id)
        return session

    async def _touch(self, session: Session) -> Session:
        session.last_used_at = utcnow()
        session.rotations = (session.rotations or 0) + 1
        await self._write(session)
        logger.info(
            "session_refreshed",
            client_id=session.client_id,
            user_id=session.user_id,
            rotations=session.rotations,
        )
        return session

    async def get(self, client_id: str, user_id: str, session_id: str) -> Session:
        stored = await self.store.get_with_metadata(
            session_key(client_id, user_id, session_id)
        )
        if stored.value is None:
            raise NotFoundError("not found")
        try:
            rotations = int(json.loads(stored.value).get("rotations", 0))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as exc:
            logger.error("session_value_corrupt", client_id=client_id, user_id=user_id)
            raise ServerError("session record is corrupt") from exc
        return self._from_metadata(
            client_id, user_id, session_id, stored.metadata, rotations=rotations
        )

    async def create_or_update(
        self,
        client_id: str,
        user_id: str,
        *,
        force_new: bool = False,
        session_id: Optional[str] = None,
    ) -> Session:
        """Mint a session, or refresh an existing one in place.

        ``force_new`` always mints. Otherwise the named ``session_id`` is
        refreshed (NotFound if it was archived); with no id, the most recently
        used live session is refreshed, and a new one is minted only when the
        user has none.
        """
        if not force_new:
            existing: Optional[Session] = None
            if session_id:
                existing = await self.get(client_id, user_id, session_id)
            else:
                live = await self.list(client_id, user_id)
                if live:
                    latest = max(live, key=lambda s: (s.last_used_at, s.id))
                    existing = await self.get(client_id, user_id, latest.id)
            if existing is not None:
                return await self._touch(existing)
        return await self._mint(client_id, user_id)

    async def list(self, client_id: str, user_id: str) -> List[Session]:
        prefix = session_prefix(client_id, user_id)
        sessions = [
            self._from_metadata(
                client_id, user_id, strip_prefix(entry.name, prefix), entry.metadata
            )
            for entry in await collect(self.store, prefix)
        ]
        return sorted(sessions, key=lambda s: (s.created_at, s.id))

    async def archive(self, client_id: str, user_id: str, session_id: str) -> None:
        key = session_key(client_id, user_id, session_id)
        if await self.store.get(key) is None:
            raise NotFoundError("not found")
        await self.store.delete(key)
        logger.info("session_archived", client_id=client_id, user_id=user_id)

    async def archive_all(self, client_id: str, user_id: str) -> ArchiveResult:
        """Delete every session of a user, best effort.

        Deletes run concurrently up to ``archive_concurrency``. A failed delete
        is counted, not raised, and does not stop the others; callers check
        ``ArchiveResult.complete`` to decide whether to retry.
        """
        prefix = session_prefix(client_id, user_id)
        entries = await collect(self.store, prefix)
        semaphore = asyncio.Semaphore(self.archive_concurrency)

        async def _archive_one(key: str) -> None:
            async with semaphore:
                await self.store.delete(key)

        outcomes = await asyncio.gather(
            *(_archive_one(entry.name) for entry in entries), return_exceptions=True
        )
        result = ArchiveResult()
        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, StoreUnavailable):
                result.failed += 1
                result.failed_ids.append(strip_prefix(entry.name, prefix))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.archived += 1
        log_fn = logger.info if result.complete else logger.warning
        log_fn(
            "sessions_archived",
            client_id=client_id,
            user_id=user_id,
            archived=result.archived,
            failed=result.failed,
        )
        return result
