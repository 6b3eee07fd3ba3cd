import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from oauthabl.service.codes import CodeService  # noqa: E402
from oauthabl.service.indexes import IndexMaintainer  # noqa: E402
from oauthabl.service.runtime import reset_runtime_for_tests  # noqa: E402
from oauthabl.service.sessions import SessionManager  # noqa: E402
from oauthabl.service.users import UserService  # noqa: E402
from oauthabl.storage.errors import StoreUnavailable  # noqa: E402
from oauthabl.storage.memory import MemoryKV  # noqa: E402


class FlakyKV(MemoryKV):
    """MemoryKV that raises StoreUnavailable for chosen operations and keys."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_puts = set()
        self.fail_deletes = set()
        self.fail_prefixes = set()
        self.fail_all = False

    def _check(self, key, targets):
        if self.fail_all or key in targets:
            raise StoreUnavailable("injected failure")
        for prefix in self.fail_prefixes:
            if key.startswith(prefix):
                raise StoreUnavailable("injected failure")

    async def get(self, key):
        self._check(key, ())
        return await super().get(key)

    async def get_with_metadata(self, key):
        self._check(key, ())
        return await super().get_with_metadata(key)

    async def put(self, key, value, **kwargs):
        self._check(key, self.fail_puts)
        return await super().put(key, value, **kwargs)

    async def delete(self, key):
        self._check(key, self.fail_deletes)
        return await super().delete(key)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryKV(page_size=2)


@pytest.fixture
def flaky_store():
    return FlakyKV(page_size=2)


@pytest.fixture
def fast_hasher():
    # Minimum argon2id cost; production uses the library defaults
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


def build_user_service(store, hasher, **code_kwargs):
    sessions = SessionManager(store, archive_concurrency=2)
    return UserService(
        store,
        IndexMaintainer(store),
        CodeService(store, **code_kwargs),
        sessions,
        hasher=hasher,
    )


@pytest.fixture
def users(store, fast_hasher):
    return build_user_service(store, fast_hasher)


@pytest.fixture
def flaky_users(flaky_store, fast_hasher):
    return build_user_service(flaky_store, fast_hasher)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
