"""
Callback Processor

Turns one inbound CMI server-to-server callback into exactly one terminal
transition and a gateway acknowledgment:

    parse -> resolve record -> verify HASH -> classify -> transition
          -> persist (compare-and-set) -> schedule forwarding -> acknowledge

The gateway may retry, reorder fields or call after the record expired.
Whatever happens, the caller gets a GatewayAck: one of the protocol tokens
or a clean 4xx/5xx, never an exception.
"""
import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Set

from ..config import settings
from ..exceptions import (
    ConcurrentUpdateError,
    StateInconsistencyError,
    StoreUnavailableError,
    TransactionNotFoundError,
    ValidationError,
    ForwardingError,
)
from ..models.callbacks import ACK_FAILED, GatewayAck
from ..models.transactions import Transaction, TransactionStatus
from .outcome_forwarder import OutcomeForwarder
from .signature_service import HASH_FIELD, excluded_field_set, verify_signature
from .state_machine import apply_transition, classify_outcome
from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)

# Correlation id aliases, first match wins
CORRELATION_FIELDS = ("ReturnOid", "oid")
RESULT_CODE_FIELD = "ProcReturnCode"

# Re-evaluations after losing a compare-and-set race
MAX_CONFLICT_RETRIES = 3


def extract_transaction_id(fields: Mapping[str, Any]) -> Optional[str]:
    """Return the first non-blank correlation id, or None."""
    for name in CORRELATION_FIELDS:
        value = fields.get(name)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


class CallbackProcessor:
    """
    Orchestrates callback handling against a store and a forwarder.

    Forwarding runs as background tasks owned by this instance; call
    drain() to wait for them (shutdown, tests).
    """

    def __init__(
        self,
        store: TransactionStore,
        forwarder: OutcomeForwarder,
        store_key: Optional[str] = None,
        success_code: Optional[str] = None,
        excluded_fields: Optional[Iterable[str]] = None
    ):
        self.store = store
        self.forwarder = forwarder
        self.store_key = store_key if store_key is not None else settings.cmi_store_key
        self.success_code = success_code or settings.cmi_success_code
        self.excluded = excluded_field_set(
            excluded_fields if excluded_fields is not None else settings.cmi_hash_excluded_fields
        )
        self._pending: Set[asyncio.Task] = set()

    # ========================================================================
    # Entry point
    # ========================================================================

    async def handle(self, raw_fields: Mapping[str, Any]) -> GatewayAck:
        """
        Process one callback.

        Returns:
            GatewayAck, including for unexpected faults (500)
        """
        try:
            return await self._handle(raw_fields)
        except Exception:
            logger.exception("Unexpected error while processing CMI callback")
            return GatewayAck(
                status_code=500,
                body="Internal server error",
                error_code="internal_error"
            )

    async def _handle(self, raw_fields: Mapping[str, Any]) -> GatewayAck:
        fields = {str(name): value for name, value in raw_fields.items()}

        transaction_id = extract_transaction_id(fields)
        if not transaction_id:
            error = ValidationError("Missing transaction ID", {"fields": sorted(fields)})
            logger.warning(f"Callback rejected: {error.message}")
            return GatewayAck(status_code=400, body=ACK_FAILED, error_code=error.error_code)

        logger.info(f"CMI callback received for {transaction_id} ({len(fields)} fields)")

        try:
            record = await self.store.get(transaction_id)
        except TransactionNotFoundError as e:
            logger.warning(f"Callback for unknown or expired transaction {transaction_id}")
            return GatewayAck(status_code=404, body=ACK_FAILED, error_code=e.error_code)
        except StoreUnavailableError as e:
            logger.error(f"Store unavailable while resolving {transaction_id}: {e.message}")
            return GatewayAck(status_code=503, body="Database error", error_code=e.error_code)

        signature_valid = verify_signature(
            fields, fields.get(HASH_FIELD), self.store_key, self.excluded
        )
        if not signature_valid:
            logger.warning(f"Hash verification failed - SECURITY ALERT: {transaction_id}")

        outcome = classify_outcome(signature_valid, fields.get(RESULT_CODE_FIELD), self.success_code)

        return await self._resolve(record, outcome, fields, MAX_CONFLICT_RETRIES)

    # ========================================================================
    # Transition + persistence
    # ========================================================================

    async def _resolve(
        self,
        record: Transaction,
        outcome: TransactionStatus,
        fields: Mapping[str, Any],
        retries_left: int
    ) -> GatewayAck:
        try:
            result = apply_transition(record, outcome, fields)
        except StateInconsistencyError as e:
            return self._inconsistent_ack(e, outcome)

        if not result.applied:
            logger.info(f"Replayed {outcome.value} callback for {record.id}, nothing to apply")
            return GatewayAck.for_outcome(outcome)

        try:
            await self.store.update(
                record.id, result.record, expected_status=TransactionStatus.PENDING
            )
        except ConcurrentUpdateError as e:
            if e.current is not None and retries_left > 0:
                logger.info(f"Transaction {record.id} changed concurrently, re-evaluating")
                return await self._resolve(e.current, outcome, fields, retries_left - 1)
            logger.error(f"Could not persist {outcome.value} for {record.id}: {e.message}")
        except (TransactionNotFoundError, StoreUnavailableError) as e:
            logger.error(f"Could not persist {outcome.value} for {record.id}: {e.message}")
        else:
            logger.info(f"Transaction {record.id} -> {outcome.value}")

        self._schedule_forward(result.record, outcome)
        return GatewayAck.for_outcome(outcome)

    def _inconsistent_ack(self, error: StateInconsistencyError, outcome: TransactionStatus) -> GatewayAck:
        """Acknowledge with the recorded outcome; unauthenticated callbacks always get FAILED."""
        logger.error(f"STATE INCONSISTENCY: {error.message}")

        if outcome == TransactionStatus.SECURITY_FAILED:
            ack = GatewayAck(body=ACK_FAILED, outcome=outcome)
        else:
            ack = GatewayAck.for_outcome(TransactionStatus(error.recorded))
        ack.error_code = error.error_code
        return ack

    # ========================================================================
    # Forwarding
    # ========================================================================

    def _schedule_forward(self, record: Transaction, outcome: TransactionStatus) -> None:
        task = asyncio.create_task(self._forward(record, outcome))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _forward(self, record: Transaction, outcome: TransactionStatus) -> None:
        try:
            await asyncio.wait_for(
                self.forwarder.notify(record, outcome),
                timeout=self.forwarder.timeout
            )
        except ForwardingError as e:
            logger.warning(f"Failed to forward outcome for {record.id}: {e.message}")
        except asyncio.TimeoutError:
            logger.warning(f"Forwarding outcome for {record.id} timed out after {self.forwarder.timeout}s")
        except Exception:
            logger.exception(f"Unexpected error forwarding outcome for {record.id}")

    async def drain(self) -> None:
        """Wait for all scheduled forwarding tasks to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
