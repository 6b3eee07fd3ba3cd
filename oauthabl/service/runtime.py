from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from oauthabl.config import Settings, get_settings, reset_settings_cache
from oauthabl.logging import get_logger
from oauthabl.service.clients import ClientAuthenticator, ClientRegistry
from oauthabl.service.codes import CodeService
from oauthabl.service.indexes import IndexMaintainer
from oauthabl.service.sessions import SessionManager
from oauthabl.service.users import UserService
from oauthabl.storage.kv import KVStore
from oauthabl.storage.memory import MemoryKV
from oauthabl.storage.redis_kv import RedisKV

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> KVStore:
    if settings.use_memory_store:
        return MemoryKV(page_size=settings.list_page_size)
    store = RedisKV(
        settings.redis_url,
        operation_timeout=settings.store_timeout_seconds,
        page_size=settings.list_page_size,
    )
    try:
        store.verify_connection()
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            redis_url=_mask_url_password(settings.redis_url),
            error_type=type(exc).__name__,
        )
        raise RuntimeError(
            "Redis is required as the key-value store; start Redis or set "
            "USE_MEMORY_STORE=true for a process-local store."
        ) from exc
    return store


class Runtime:
    """Holds the store and the service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, store: Optional[KVStore] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if isinstance(self.store, MemoryKV) else "redis",
        )

        self.clients = ClientRegistry(self.store)
        self.authenticator = ClientAuthenticator(self.store)
        self.codes = CodeService(
            self.store,
            length=self.settings.code_length,
            alphabet=self.settings.code_alphabet,
            ttl_seconds=self.settings.code_ttl_seconds,
        )
        self.sessions = SessionManager(
            self.store,
            session_id_bytes=self.settings.session_id_bytes,
            archive_concurrency=self.settings.archive_concurrency,
        )
        self.indexes = IndexMaintainer(self.store)
        self.users = UserService(self.store, self.indexes, self.codes, self.sessions)

    async def close(self) -> None:
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
_close_tasks: set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_task_done(task: asyncio.Task) -> None:
    _close_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("runtime_close_failed", error=str(task.exception()))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                task = loop.create_task(runtime.close())
                _close_tasks.add(task)
                task.add_done_callback(_close_task_done)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
