from __future__ import annotations

import hmac
import secrets
from enum import Enum
from typing import Optional

from oauthabl.config import DEFAULT_CODE_ALPHABET
from oauthabl.logging import get_logger
from oauthabl.service.errors import NotFoundError
from oauthabl.storage.kv import KVStore, code_key

logger = get_logger(__name__)


class CodeKind(str, Enum):
    """Purpose of a one-time code; the value is the storage key prefix."""

    EMAIL_VERIFY = "emailverify"
    FORGOT_PASSWORD = "forgotpassword"


class CodeService:
    """Issues and consumes single-use codes scoped to (kind, client, user).

    At most one code is live per subject: issuing overwrites. A wrong guess
    leaves the code in place so a typo does not force a reissue. There is no
    attempt counter or lockout. Codes never expire unless ``ttl_seconds`` is
    set, in which case expiry is delegated to the store.
    """

    def __init__(
        self,
        store: KVStore,
        *,
        length: int = 8,
        alphabet: str = DEFAULT_CODE_ALPHABET,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.store = store
        self.length = length
        self.alphabet = alphabet
        self.ttl_seconds = ttl_seconds

    def _generate(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    async def issue(self, kind: CodeKind, client_id: str, user_id: str) -> str:
        code = self._generate()
        await self.store.put(
            code_key(kind.value, client_id, user_id),
            code,
            expiration_ttl=self.ttl_seconds,
        )
        logger.info(
            "code_issued", kind=kind.value, client_id=client_id, user_id=user_id
        )
        return code

    async def verify(
        self, kind: CodeKind, client_id: str, user_id: str, code: str
    ) -> bool:
        key = code_key(kind.value, client_id, user_id)
        stored = await self.store.get(key)
        if stored is None:
            logger.warning(
                "code_missing", kind=kind.value, client_id=client_id, user_id=user_id
            )
            raise NotFoundError("not found")
        if not hmac.compare_digest(stored.encode(), (code or "").encode()):
            logger.warning(
                "code_mismatch", kind=kind.value, client_id=client_id, user_id=user_id
            )
            return False
        await self.store.delete(key)
        logger.info(
            "code_consumed", kind=kind.value, client_id=client_id, user_id=user_id
        )
        return True

    async def revoke(self, kind: CodeKind, client_id: str, user_id: str) -> None:
        await self.store.delete(code_key(kind.value, client_id, user_id))
