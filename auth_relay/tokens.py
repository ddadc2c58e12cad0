"""Token hand-off lifecycle.

A provider token is parked under the OAuth state value the CLI generated,
for a fixed window (TOKEN_TTL_SECONDS). The CLI can check its status any
number of times, and retrieve it exactly once:

    not_found --store--> pending | ready --consume--> consumed
    (any state) --TTL elapses--> not_found

An empty access_token marks a pending record. Consumption rewrites the
record in place through compare-and-swap, so its expiry is kept and
of several concurrent consumers only one wins.
"""

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum

from loguru import logger

from auth_relay.logging import audit_token_consumed, audit_token_stored, state_prefix
from auth_relay.store import TTL_ABSENT, EntryStore, StoreUnavailableError

# Lifetime of a parked token (5 minutes)
TOKEN_TTL_SECONDS = 300

KEY_PREFIX = "token:"


class TokenStatus(StrEnum):
    """Externally visible state of a correlation key."""

    READY = "ready"
    PENDING = "pending"
    CONSUMED = "consumed"
    NOT_FOUND = "not_found"


class RecordDecodeError(ValueError):
    """Raised when a stored value is not a valid token record."""


@dataclass(frozen=True)
class TokenRecord:
    """Provider token plus hand-off metadata."""

    access_token: str
    expiry: datetime
    refresh_token: str = ""
    token_type: str = "Bearer"
    consumed: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_pending(self) -> bool:
        return not self.access_token

    def to_json(self) -> str:
        data = asdict(self)
        data["expiry"] = self.expiry.isoformat()
        data["created_at"] = self.created_at.isoformat()
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "TokenRecord":
        try:
            data = json.loads(raw)
            return cls(
                access_token=str(data["access_token"]),
                refresh_token=str(data.get("refresh_token") or ""),
                token_type=str(data.get("token_type") or "Bearer"),
                expiry=datetime.fromisoformat(data["expiry"]),
                consumed=bool(data.get("consumed", False)),
                created_at=datetime.fromisoformat(data["created_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise RecordDecodeError(f"Invalid token record: {e}") from e

    def to_response(self) -> dict[str, str]:
        """Token fields handed to the CLI."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expiry": self.expiry.isoformat(),
        }


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a consuming read. `record` is set only when status is READY."""

    record: TokenRecord | None
    status: TokenStatus


def status_of(record: TokenRecord | None) -> TokenStatus:
    """Map a (possibly absent) record to its state."""
    if record is None:
        return TokenStatus.NOT_FOUND
    if record.consumed:
        return TokenStatus.CONSUMED
    if record.is_pending:
        return TokenStatus.PENDING
    return TokenStatus.READY


class TokenController:
    """Enforces the hand-off state machine on top of an EntryStore."""

    def __init__(self, store: EntryStore, ttl_seconds: int = TOKEN_TTL_SECONDS) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    @property
    def entry_store(self) -> EntryStore:
        return self._store

    @staticmethod
    def _key(state: str) -> str:
        return f"{KEY_PREFIX}{state}"

    async def store(self, state: str, record: TokenRecord) -> None:
        """Park a record under `state` for the full TTL window.

        Raises:
            StoreUnavailableError: If the backing store is unreachable.
        """
        await self._store.put(self._key(state), record.to_json(), self._ttl_seconds)
        audit_token_stored(state)

    async def _read(self, state: str) -> tuple[str, TokenRecord] | None:
        """Fetch and decode the record. Undecodable values count as absent."""
        raw = await self._store.get(self._key(state))
        if raw is None:
            return None
        try:
            return raw, TokenRecord.from_json(raw)
        except RecordDecodeError:
            logger.warning(
                "Discarding unreadable token record",
                extra={"state_prefix": state_prefix(state)},
            )
            return None

    async def status(self, state: str) -> TokenStatus:
        """Report the state of `state` without changing it."""
        try:
            found = await self._read(state)
        except StoreUnavailableError:
            logger.warning(
                "Store unavailable during status check",
                extra={"state_prefix": state_prefix(state)},
            )
            return TokenStatus.NOT_FOUND
        return status_of(found[1] if found else None)

    async def consume(self, state: str) -> ConsumeResult:
        """Retrieve the token for `state`, at most once."""
        try:
            return await self._consume(state)
        except StoreUnavailableError:
            logger.warning(
                "Store unavailable during consume",
                extra={"state_prefix": state_prefix(state)},
            )
            return ConsumeResult(None, TokenStatus.NOT_FOUND)

    async def _consume(self, state: str) -> ConsumeResult:
        key = self._key(state)

        found = await self._read(state)
        if found is None:
            return ConsumeResult(None, TokenStatus.NOT_FOUND)
        raw, record = found

        current = status_of(record)
        if current is not TokenStatus.READY:
            return ConsumeResult(None, current)

        # Expired between the read and now: let it vanish rather than rewrite it
        if await self._store.remaining_ttl(key) == TTL_ABSENT:
            return ConsumeResult(None, TokenStatus.NOT_FOUND)

        spent = replace(record, consumed=True)
        if await self._store.compare_and_swap(key, raw, spent.to_json()):
            audit_token_consumed(state)
            return ConsumeResult(record, TokenStatus.READY)

        # Lost the race: report what the winner (or expiry) left behind
        after = await self._read(state)
        lost = status_of(after[1] if after else None)
        if lost is TokenStatus.READY:
            # A newer record was stored meanwhile; the caller should poll again
            lost = TokenStatus.PENDING
        return ConsumeResult(None, lost)
