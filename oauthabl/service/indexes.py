from __future__ import annotations

from typing import List, Optional, Sequence

from oauthabl.logging import get_logger
from oauthabl.service.errors import ConflictError, PartialWriteError, ValidationError
from oauthabl.storage.errors import StoreUnavailable
from oauthabl.storage.kv import (
    EMAIL_PREFIX,
    USERNAME_PREFIX,
    KVStore,
    collect,
    email_key,
    user_key,
    username_key,
)

logger = get_logger(__name__)

USERNAME_INDEX = "username_index"
EMAIL_INDEX = "email_index"


class IndexMaintainer:
    """Keeps ``username:`` and ``email:`` lookup keys in step with user records.

    The store has no transactions, so ordering carries the invariant: indexes
    are written before the primary record and deleted before it too. A crash
    midway leaves at most an index pointing at a missing user, which lookups
    treat as absent and ``prune_orphans`` removes.
    """

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def exists(
        self,
        client_id: str,
        *,
        username: Optional[str] = None,
        emails: Sequence[str] = (),
    ) -> Optional[str]:
        """Return the name of the first identifier already taken, if any."""
        if username and await self.store.get(username_key(client_id, username)):
            return "username"
        for email in emails:
            if await self.store.get(email_key(client_id, email)):
                return "email"
        return None

    async def claim(
        self,
        client_id: str,
        user_id: str,
        *,
        username: Optional[str] = None,
        emails: Sequence[str] = (),
        email_verified: bool = False,
    ) -> List[str]:
        """Write the index entries for a new user; returns the steps applied.

        Each write is conditional, so of two racing registrations only one
        wins a given identifier. Nothing already written is rolled back.
        """
        steps: List[tuple[str, str, Optional[dict]]] = []
        if username:
            steps.append((USERNAME_INDEX, username_key(client_id, username), None))
        for email in emails:
            steps.append(
                (EMAIL_INDEX, email_key(client_id, email), {"emailVerified": email_verified})
            )

        completed: List[str] = []
        for step, key, metadata in steps:
            try:
                written = await self.store.put(
                    key, user_id, metadata=metadata, only_if_absent=True
                )
            except StoreUnavailable as exc:
                logger.error(
                    "index_write_failed",
                    client_id=client_id,
                    user_id=user_id,
                    step=step,
                    completed=completed,
                )
                raise PartialWriteError(
                    "internal server error", completed_steps=completed, failed_step=step
                ) from exc
            if not written:
                logger.warning(
                    "index_conflict",
                    client_id=client_id,
                    step=step,
                    completed=completed,
                )
                raise ConflictError(
                    "identifier already in use",
                    detail={"completed_steps": list(completed), "failed_step": step},
                )
            completed.append(step)
        return completed

    async def release(
        self,
        client_id: str,
        *,
        username: Optional[str] = None,
        emails: Sequence[str] = (),
    ) -> List[str]:
        completed: List[str] = []
        if username:
            await self._release_one(
                client_id, USERNAME_INDEX, username_key(client_id, username), completed
            )
        for email in emails:
            await self._release_one(
                client_id, EMAIL_INDEX, email_key(client_id, email), completed
            )
        return completed

    async def _release_one(
        self, client_id: str, step: str, key: str, completed: List[str]
    ) -> None:
        try:
            await self.store.delete(key)
        except StoreUnavailable as exc:
            logger.error(
                "index_delete_failed", client_id=client_id, step=step, completed=completed
            )
            raise PartialWriteError(
                "internal server error", completed_steps=completed, failed_step=step
            ) from exc
        completed.append(step)

    async def resolve(self, client_id: str, prop: str, identifier: str) -> Optional[str]:
        if prop == "username":
            return await self.store.get(username_key(client_id, identifier))
        if prop == "email":
            return await self.store.get(email_key(client_id, identifier))
        raise ValidationError("unsupported lookup property")

    async def set_email_verified(
        self, client_id: str, user_id: str, email: str, verified: bool
    ) -> None:
        await self.store.put(
            email_key(client_id, email), user_id, metadata={"emailVerified": verified}
        )

    async def prune_orphans(self, client_id: str) -> int:
        """Delete index entries whose user record no longer exists.

        Meant for explicit maintenance runs. Not called on reads, since a
        registration in flight has its indexes written before its user record.
        """
        pruned = 0
        for family in (USERNAME_PREFIX, EMAIL_PREFIX):
            for entry in await collect(self.store, f"{family}:{client_id}:"):
                user_id = await self.store.get(entry.name)
                if user_id is None:
                    continue
                if await self.store.get(user_key(client_id, user_id)) is None:
                    await self.store.delete(entry.name)
                    pruned += 1
        if pruned:
            logger.info("index_orphans_pruned", client_id=client_id, pruned=pruned)
        return pruned
