"""
Transaction Store

Creates, reads and updates transaction records in Redis.

Storage contract:
- One JSON value per transaction under "transaction:<id>"
- Every write sets a fresh TTL (refreshed, not extended-only)
- Expired and unknown ids are indistinguishable (TransactionNotFoundError)
- Infrastructure faults surface as StoreUnavailableError
"""
import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError, WatchError

from ..config import settings
from ..exceptions import (
    ConcurrentUpdateError,
    StoreUnavailableError,
    TransactionNotFoundError,
    ValidationError,
)
from ..models.transactions import Transaction, TransactionStatus

logger = logging.getLogger(__name__)

KEY_PREFIX = "transaction:"


def transaction_key(transaction_id: str) -> str:
    return f"{KEY_PREFIX}{transaction_id}"


class TransactionStore:
    """
    Redis-backed transaction record store.

    Redis SET with EX is the only mutation primitive. Conditional updates
    wrap it in WATCH/MULTI/EXEC so read-check-write is atomic per id.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: Optional[int] = None):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.transaction_ttl_seconds

    # ========================================================================
    # Serialization
    # ========================================================================

    @staticmethod
    def _serialize(record: Transaction) -> str:
        return record.model_dump_json()

    @staticmethod
    def _deserialize(transaction_id: str, raw) -> Transaction:
        try:
            return Transaction.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.error(f"Stored record for {transaction_id} is unreadable: {e}")
            raise StoreUnavailableError(
                f"Stored record for {transaction_id} is unreadable",
                {"transaction_id": transaction_id}
            ) from e

    # ========================================================================
    # Operations
    # ========================================================================

    async def create(self, record: Transaction, ttl: Optional[int] = None) -> Transaction:
        """
        Persist a new record.

        Raises:
            ValidationError: If a record with the same id already exists
            StoreUnavailableError: On Redis failure
        """
        key = transaction_key(record.id)
        try:
            created = await self._client.set(
                key, self._serialize(record), ex=ttl or self.ttl_seconds, nx=True
            )
        except RedisError as e:
            logger.error(f"Failed to store transaction {record.id}: {e}")
            raise StoreUnavailableError(
                "Failed to store transaction", {"transaction_id": record.id}
            ) from e

        if not created:
            raise ValidationError(
                f"Transaction id already in use: {record.id}",
                {"transaction_id": record.id}
            )

        logger.info(f"Stored transaction {record.id} (ttl={ttl or self.ttl_seconds}s)")
        return record

    async def get(self, transaction_id: str) -> Transaction:
        """
        Load a record.

        Raises:
            TransactionNotFoundError: Unknown or expired id
            StoreUnavailableError: On Redis failure or unreadable record
        """
        try:
            raw = await self._client.get(transaction_key(transaction_id))
        except RedisError as e:
            logger.error(f"Failed to retrieve transaction {transaction_id}: {e}")
            raise StoreUnavailableError(
                "Failed to retrieve transaction", {"transaction_id": transaction_id}
            ) from e

        if raw is None:
            raise TransactionNotFoundError(transaction_id)

        return self._deserialize(transaction_id, raw)

    async def update(
        self,
        transaction_id: str,
        record: Transaction,
        ttl: Optional[int] = None,
        expected_status: Optional[TransactionStatus] = None
    ) -> Transaction:
        """
        Replace a record and reset its expiry window.

        Args:
            transaction_id: Id of the record to replace
            record: New record content
            ttl: Expiry in seconds (defaults to the store TTL)
            expected_status: If set, only write while the stored status matches

        Raises:
            TransactionNotFoundError: Record expired before the write
            ConcurrentUpdateError: Stored status no longer matches, or the key
                changed during the transaction (carries the current record)
            StoreUnavailableError: On Redis failure
        """
        key = transaction_key(transaction_id)
        expire = ttl or self.ttl_seconds

        try:
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise TransactionNotFoundError(transaction_id)

                    if expected_status is not None:
                        current = self._deserialize(transaction_id, raw)
                        if current.status != expected_status:
                            raise ConcurrentUpdateError(transaction_id, current)

                    pipe.multi()
                    pipe.set(key, self._serialize(record), ex=expire)
                    await pipe.execute()
                except WatchError:
                    current = await self._read_current(transaction_id)
                    raise ConcurrentUpdateError(transaction_id, current)
        except RedisError as e:
            logger.error(f"Failed to update transaction {transaction_id}: {e}")
            raise StoreUnavailableError(
                "Failed to update transaction", {"transaction_id": transaction_id}
            ) from e

        logger.debug(f"Updated transaction {transaction_id} -> {record.status.value}")
        return record

    async def _read_current(self, transaction_id: str) -> Optional[Transaction]:
        try:
            return await self.get(transaction_id)
        except TransactionNotFoundError:
            return None
