"""TTL-bounded key-value storage for parked tokens.

Two interchangeable backends implement the EntryStore protocol:
- MemoryEntryStore: in-process dict, for single-instance deployments
- FirestoreEntryStore: Google Cloud Firestore, shared by all instances

Values are opaque strings. Every entry has an absolute expiry; an entry whose
expiry has passed is never returned and is purged lazily on access (and by the
periodic sweeper).

Firestore layout:
- relay_tokens: Document ID = entry key (e.g. "token:{state}")
  - value: Serialized payload
  - expires_at: Absolute expiry, also usable as a Firestore TTL field
"""

import asyncio
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud.firestore_v1 import AsyncClient
from google.cloud.firestore_v1.async_transaction import async_transactional
from loguru import logger

# Returned by remaining_ttl() for missing or expired keys
TTL_ABSENT = -2

# Default timeout for Firestore operations (seconds)
DEFAULT_TIMEOUT = 10.0

FIRESTORE_COLLECTION = "relay_tokens"


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class EntryStore(Protocol):
    """Storage operations needed by the token controller."""

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def remaining_ttl(self, key: str) -> int: ...

    async def delete(self, key: str) -> None: ...

    async def compare_and_swap(self, key: str, expected: str, value: str) -> bool: ...

    async def purge_expired(self) -> int: ...


def _whole_seconds(remaining: float) -> int:
    """Round a positive remaining lifetime up to whole seconds."""
    if remaining <= 0:
        return TTL_ABSENT
    return math.ceil(remaining)


# =============================================================================
# In-memory backend
# =============================================================================


@dataclass
class _Entry:
    value: str
    expires_at: float


class MemoryEntryStore:
    """Thread-safe in-process entry store.

    Not shared between processes: run a single instance when using it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the store.

        Args:
            clock: Monotonic time source in seconds (injectable for testing)
        """
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_entry(self, key: str) -> _Entry | None:
        """Return the entry if unexpired, purging it otherwise. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    async def remaining_ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return TTL_ABSENT
            return _whole_seconds(entry.expires_at - self._clock())

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def compare_and_swap(self, key: str, expected: str, value: str) -> bool:
        """Replace the value if it still equals `expected`, keeping the entry's expiry."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.value != expected:
                return False
            entry.value = value
            return True

    async def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)


# =============================================================================
# Firestore backend
# =============================================================================


class FirestoreEntryStore:
    """Async Firestore entry store.

    All operations have a configurable timeout (default 10 seconds). Backend
    failures surface as StoreUnavailableError.
    """

    def __init__(
        self,
        project: str = "",
        database: str = "(default)",
        timeout: float = DEFAULT_TIMEOUT,
        client: Any = None,
    ) -> None:
        """Initialize with project and database name.

        Args:
            project: Google Cloud project ID
            database: Firestore database name (defaults to "(default)")
            timeout: Timeout in seconds for database operations (default 10)
            client: Optional AsyncClient instance (injectable for testing)
        """
        self._client = client or AsyncClient(project=project, database=database)
        self._timeout = timeout

    async def close(self) -> None:
        """Close the database connection."""
        self._client.close()

    def _doc(self, key: str) -> Any:
        return self._client.collection(FIRESTORE_COLLECTION).document(key)

    async def _call(self, operation: str, awaitable: Any) -> Any:
        """Await a Firestore call with the store timeout, normalizing failures."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (GoogleAPIError, GoogleAuthError, TimeoutError) as e:
            logger.warning(
                "Firestore operation failed", extra={"operation": operation, "error": str(e)}
            )
            raise StoreUnavailableError(f"Firestore {operation} failed: {e}", e) from e

    @staticmethod
    def _live_data(snapshot: Any) -> dict[str, Any] | None:
        """Document data if the document exists and has not expired."""
        if not snapshot.exists:
            return None
        data = snapshot.to_dict()
        if not data:
            return None
        expires_at = data.get("expires_at")
        if "value" not in data or not expires_at or datetime.now(UTC) >= expires_at:
            return None
        return data

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = datetime.now(UTC) + timedelta(seconds=ttl_seconds)
        await self._call("put", self._doc(key).set({"value": value, "expires_at": expires_at}))

    async def get(self, key: str) -> str | None:
        # Expired documents are left to purge_expired: an unconditional delete
        # here could remove a value put after this read
        snapshot = await self._call("get", self._doc(key).get())
        data = self._live_data(snapshot)
        return data["value"] if data else None

    async def remaining_ttl(self, key: str) -> int:
        snapshot = await self._call("get", self._doc(key).get())
        data = self._live_data(snapshot)
        if data is None:
            return TTL_ABSENT
        return _whole_seconds((data["expires_at"] - datetime.now(UTC)).total_seconds())

    async def delete(self, key: str) -> None:
        await self._call("delete", self._doc(key).delete())

    async def compare_and_swap(self, key: str, expected: str, value: str) -> bool:
        """Replace the value if it still equals `expected`, keeping expires_at.

        Uses a Firestore transaction so concurrent swaps of the same key cannot
        both succeed.
        """
        transaction = self._client.transaction()
        swap = async_transactional(self._swap_in_transaction)
        return await self._call(
            "compare_and_swap", swap(transaction, self._doc(key), expected, value)
        )

    async def _swap_in_transaction(
        self, transaction: Any, doc_ref: Any, expected: str, value: str
    ) -> bool:
        snapshot = await doc_ref.get(transaction=transaction)
        data = self._live_data(snapshot)
        if data is None:
            if snapshot.exists:
                transaction.delete(doc_ref)
            return False
        if data["value"] != expected:
            return False
        transaction.update(doc_ref, {"value": value})
        return True

    async def purge_expired(self) -> int:
        """Delete expired documents. Returns count of deleted documents."""
        now = datetime.now(UTC)
        query = (
            self._client.collection(FIRESTORE_COLLECTION)
            .where("expires_at", "<=", now)
            .limit(100)  # Batch size to avoid timeout
        )
        expired_docs = await self._call("purge_query", query.get())

        count = 0
        for doc in expired_docs:
            await self._call("purge_delete", doc.reference.delete())
            count += 1
        return count


# =============================================================================
# Background expiry sweep
# =============================================================================


async def run_expiry_sweeper(store: EntryStore, interval_seconds: float) -> None:
    """Periodically purge expired entries until cancelled.

    A failed round never stops the sweeper; it tries again next interval.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.purge_expired()
        except StoreUnavailableError:
            # Logged by the store
            continue
        except Exception:
            logger.exception("Expiry sweep failed")
            continue
        if removed:
            logger.debug("Purged expired entries", extra={"count": removed})
