from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from oauthabl.storage.kv import KeyEntry, Metadata, StoredValue


@dataclass
class _Record:
    value: str
    metadata: Optional[Metadata]
    expires_at: Optional[float] = None


class MemoryKV:
    """In-process key-value store with the same contract as the Redis gateway.

    Used for tests and local development. Expired keys are dropped lazily on
    access, the way a TTL-capable store hides them.
    """

    def __init__(self, *, page_size: int = 100) -> None:
        self.page_size = page_size
        self._records: Dict[str, _Record] = {}
        # RLock so listing snapshots can nest inside other locked reads
        self._data_lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Record]:
        record = self._records.get(key)
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= time.time():
            self._records.pop(key, None)
            return None
        return record

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            record = self._live(key)
            return record.value if record else None

    async def get_with_metadata(self, key: str) -> StoredValue:
        with self._data_lock:
            record = self._live(key)
            if record is None:
                return StoredValue(value=None, metadata=None)
            return StoredValue(
                value=record.value, metadata=copy.deepcopy(record.metadata)
            )

    async def put(
        self,
        key: str,
        value: str,
        *,
        metadata: Optional[Metadata] = None,
        expiration_ttl: Optional[int] = None,
        only_if_absent: bool = False,
    ) -> bool:
        with self._data_lock:
            if only_if_absent and self._live(key) is not None:
                return False
            expires_at = time.time() + expiration_ttl if expiration_ttl else None
            self._records[key] = _Record(
                value=value,
                metadata=copy.deepcopy(metadata),
                expires_at=expires_at,
            )
            return True

    async def delete(self, key: str) -> None:
        with self._data_lock:
            self._records.pop(key, None)

    async def list(self, prefix: str) -> AsyncIterator[KeyEntry]:
        with self._data_lock:
            names = sorted(k for k in self._records if k.startswith(prefix))
        for start in range(0, len(names), self.page_size):
            page = names[start : start + self.page_size]
            entries = []
            with self._data_lock:
                for name in page:
                    record = self._live(name)
                    if record is None:
                        continue
                    entries.append(
                        KeyEntry(name=name, metadata=copy.deepcopy(record.metadata))
                    )
            for entry in entries:
                yield entry

    async def close(self) -> None:
        return None

    def keys(self) -> list[str]:
        """Snapshot of live keys, for inspection in tests and admin tooling."""
        with self._data_lock:
            return sorted(k for k in list(self._records) if self._live(k) is not None)
