from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, List, Optional, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from oauthabl.logging import get_logger
from oauthabl.service.codes import CodeKind, CodeService
from oauthabl.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PartialWriteError,
    ServerError,
    ValidationError,
)
from oauthabl.service.indexes import IndexMaintainer
from oauthabl.service.sessions import SessionManager
from oauthabl.storage.errors import StoreUnavailable
from oauthabl.storage.kv import KVStore, collect, strip_prefix, user_key, user_prefix
from oauthabl.storage.models import ArchiveResult, Session, User

logger = get_logger(__name__)

T = TypeVar("T")

LOOKUP_PROPERTIES = ("id", "username", "email")


@dataclass
class Registration:
    user: User
    steps: List[str]
    code: Optional[str] = None
    session: Optional[Session] = None


@dataclass
class UserDeletion:
    user_id: str
    steps: List[str]
    sessions: ArchiveResult = field(default_factory=ArchiveResult)


@dataclass
class CredentialChange:
    session: Session
    revoked: ArchiveResult


class UserService:
    """User registry plus the login, verification and reset flows on top of it."""

    def __init__(
        self,
        store: KVStore,
        indexes: IndexMaintainer,
        codes: CodeService,
        sessions: SessionManager,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.indexes = indexes
        self.codes = codes
        self.sessions = sessions
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._decoy_hash: Optional[str] = None

    # -- password primitives -------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown identifiers cost the same."""
        if self._decoy_hash is None:
            self._decoy_hash = self._hash_password(secrets.token_urlsafe(16))
        self._verify_password(self._decoy_hash, password)

    # -- record access -------------------------------------------------------

    async def _load(self, client_id: str, user_id: str) -> Tuple[User, dict]:
        stored = await self.store.get_with_metadata(user_key(client_id, user_id))
        if stored.value is None:
            raise NotFoundError("not found")
        try:
            value = json.loads(stored.value)
        except json.JSONDecodeError as exc:
            logger.error("user_record_corrupt", client_id=client_id, user_id=user_id)
            raise ServerError("user record is corrupt") from exc
        return User.from_metadata(client_id, user_id, stored.metadata), value

    async def _save(self, user: User, value: dict) -> None:
        await self.store.put(
            user_key(user.client_id, user.id),
            json.dumps(value),
            metadata=user.to_metadata(),
        )

    async def _step(self, steps: List[str], name: str, awaitable: Awaitable[T]) -> T:
        try:
            result = await awaitable
        except StoreUnavailable as exc:
            logger.error("multi_key_step_failed", step=name, completed=steps)
            raise PartialWriteError(
                "internal server error", completed_steps=steps, failed_step=name
            ) from exc
        steps.append(name)
        return result

    async def _resolve_identifier(self, client_id: str, identifier: str) -> Optional[str]:
        user_id = await self.indexes.resolve(client_id, "username", identifier)
        if user_id is None:
            user_id = await self.indexes.resolve(client_id, "email", identifier)
        return user_id

    # -- registry ------------------------------------------------------------

    async def register(
        self,
        client_id: str,
        *,
        password: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        verify_email: bool = False,
    ) -> Registration:
        """Create a user, its lookup indexes, and either a code or a session.

        With ``verify_email`` an email verification code is returned and no
        session is created until the address is confirmed. Otherwise a new
        session is forced immediately.
        """
        if not username and not email:
            raise ValidationError("username or email is required")
        if verify_email and not email:
            raise ValidationError("email is required to verify an email address")
        if not password:
            raise ValidationError("password is required")

        emails = [email] if email else []
        # Advisory only; claim() below is what actually guards the identifiers
        taken = await self.indexes.exists(client_id, username=username, emails=emails)
        if taken:
            logger.warning("registration_conflict", client_id=client_id, field=taken)
            raise ConflictError("identifier already in use")

        user = User(
            id=secrets.token_urlsafe(16),
            client_id=client_id,
            username=username,
            email_addresses=emails,
            email_verified=False,
        )
        password_hash = self._hash_password(password)

        steps = await self.indexes.claim(
            client_id, user.id, username=username, emails=emails
        )
        await self._step(steps, "user_record", self._save(user, {"passwordHash": password_hash}))

        registration = Registration(user=user, steps=steps)
        if verify_email:
            registration.code = await self._step(
                steps,
                "verification_code",
                self.codes.issue(CodeKind.EMAIL_VERIFY, client_id, user.id),
            )
        else:
            registration.session = await self._step(
                steps,
                "session",
                self.sessions.create_or_update(client_id, user.id, force_new=True),
            )
        logger.info(
            "user_registered",
            client_id=client_id,
            user_id=user.id,
            verify_email=verify_email,
        )
        return registration

    async def get(self, client_id: str, user_id: str) -> User:
        user, _ = await self._load(client_id, user_id)
        return user

    async def find(self, client_id: str, prop: str, identifier: str) -> User:
        """Look a user up by ``id``, ``username`` or ``email``."""
        if prop not in LOOKUP_PROPERTIES:
            raise ValidationError("unsupported lookup property")
        if prop == "id":
            return await self.get(client_id, identifier)
        user_id = await self.indexes.resolve(client_id, prop, identifier)
        if user_id is None:
            raise NotFoundError("not found")
        try:
            return await self.get(client_id, user_id)
        except NotFoundError:
            logger.warning("stale_index", client_id=client_id, index=prop, user_id=user_id)
            raise

    async def list(self, client_id: str) -> List[User]:
        prefix = user_prefix(client_id)
        return [
            User.from_metadata(client_id, strip_prefix(entry.name, prefix), entry.metadata)
            for entry in await collect(self.store, prefix)
        ]

    async def delete(self, client_id: str, user_id: str) -> UserDeletion:
        """Remove indexes, then the user record, then codes and sessions."""
        user = await self.get(client_id, user_id)
        steps = await self.indexes.release(
            client_id, username=user.username, emails=user.email_addresses
        )
        await self._step(steps, "user_record", self.store.delete(user_key(client_id, user_id)))
        for kind in CodeKind:
            await self._step(
                steps, f"{kind.value}_code", self.codes.revoke(kind, client_id, user_id)
            )
        sessions = await self.sessions.archive_all(client_id, user_id)
        logger.info(
            "user_deleted",
            client_id=client_id,
            user_id=user_id,
            sessions_archived=sessions.archived,
            sessions_failed=sessions.failed,
        )
        return UserDeletion(user_id=user_id, steps=steps, sessions=sessions)

    # -- flows -----------------------------------------------------------------

    async def login(self, client_id: str, identifier: str, password: str) -> Session:
        user_id = await self._resolve_identifier(client_id, identifier)
        value = None
        if user_id is not None:
            try:
                _, value = await self._load(client_id, user_id)
            except NotFoundError:
                logger.warning("stale_index", client_id=client_id, user_id=user_id)
        if value is None or not value.get("passwordHash"):
            self._burn_verification(password)
            logger.warning("login_failed", client_id=client_id, reason="unknown_identifier")
            raise AuthenticationError("invalid credentials")
        stored_hash = value["passwordHash"]
        if not self._verify_password(stored_hash, password):
            logger.warning("login_failed", client_id=client_id, user_id=user_id)
            raise AuthenticationError("invalid credentials")
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            user, _ = await self._load(client_id, user_id)
            await self._save(user, {**value, "passwordHash": self._hash_password(password)})
        return await self.sessions.create_or_update(client_id, user_id, force_new=True)

    async def request_email_verification(self, client_id: str, email: str) -> Optional[str]:
        """Reissue an email verification code; None when there is nothing to verify."""
        user_id = await self.indexes.resolve(client_id, "email", email)
        if user_id is None:
            return None
        try:
            user = await self.get(client_id, user_id)
        except NotFoundError:
            logger.warning("stale_index", client_id=client_id, index="email", user_id=user_id)
            return None
        if user.email_verified:
            logger.info("email_already_verified", client_id=client_id, user_id=user_id)
            return None
        return await self.codes.issue(CodeKind.EMAIL_VERIFY, client_id, user_id)

    async def verify_email(self, client_id: str, email: str, code: str) -> Session:
        user_id = await self.indexes.resolve(client_id, "email", email)
        if user_id is None:
            raise NotFoundError("not found")
        user, value = await self._load(client_id, user_id)
        if not await self.codes.verify(CodeKind.EMAIL_VERIFY, client_id, user_id, code):
            raise ValidationError("invalid code")
        user.email_verified = True
        await self._save(user, value)
        for address in user.email_addresses:
            await self.indexes.set_email_verified(client_id, user_id, address, True)
        logger.info("email_verified", client_id=client_id, user_id=user_id)
        return await self.sessions.create_or_update(client_id, user_id, force_new=True)

    async def request_password_reset(self, client_id: str, identifier: str) -> Optional[str]:
        """Issue a forgot-password code; None when the identifier is unknown."""
        user_id = await self._resolve_identifier(client_id, identifier)
        if user_id is None:
            return None
        try:
            await self.get(client_id, user_id)
        except NotFoundError:
            logger.warning("stale_index", client_id=client_id, user_id=user_id)
            return None
        return await self.codes.issue(CodeKind.FORGOT_PASSWORD, client_id, user_id)

    async def reset_password(
        self, client_id: str, identifier: str, code: str, new_password: str
    ) -> CredentialChange:
        if not new_password:
            raise ValidationError("password is required")
        user_id = await self._resolve_identifier(client_id, identifier)
        if user_id is None:
            raise NotFoundError("not found")
        user, value = await self._load(client_id, user_id)
        if not await self.codes.verify(CodeKind.FORGOT_PASSWORD, client_id, user_id, code):
            raise ValidationError("invalid code")
        return await self._replace_password(user, value, new_password)

    async def change_password(
        self, client_id: str, user_id: str, current_password: str, new_password: str
    ) -> CredentialChange:
        if not new_password:
            raise ValidationError("password is required")
        user, value = await self._load(client_id, user_id)
        if not self._verify_password(value.get("passwordHash", ""), current_password):
            logger.warning("password_change_denied", client_id=client_id, user_id=user_id)
            raise AuthenticationError("invalid credentials")
        return await self._replace_password(user, value, new_password)

    async def _replace_password(
        self, user: User, value: dict, new_password: str
    ) -> CredentialChange:
        await self._save(user, {**value, "passwordHash": self._hash_password(new_password)})
        revoked = await self.sessions.archive_all(user.client_id, user.id)
        session = await self.sessions.create_or_update(
            user.client_id, user.id, force_new=True
        )
        logger.info(
            "password_replaced",
            client_id=user.client_id,
            user_id=user.id,
            sessions_revoked=revoked.archived,
        )
        return CredentialChange(session=session, revoked=revoked)
