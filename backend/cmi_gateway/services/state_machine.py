"""
Transaction State Machine

pending -> completed | failed | security_failed. All three are terminal.

Replays of the recorded terminal outcome are no-ops; a different outcome
for a terminal record is a StateInconsistencyError, never an overwrite.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from ..exceptions import StateInconsistencyError
from ..models.transactions import Transaction, TransactionStatus


@dataclass(frozen=True)
class TransitionResult:
    record: Transaction
    applied: bool  # False for an idempotent replay


def classify_outcome(
    signature_valid: bool,
    result_code: Optional[str],
    success_code: str = "00"
) -> TransactionStatus:
    """
    Map a verified callback onto the terminal status it requests.

    Signature failure wins over any result code.
    """
    if not signature_valid:
        return TransactionStatus.SECURITY_FAILED
    if result_code == success_code:
        return TransactionStatus.COMPLETED
    return TransactionStatus.FAILED


def apply_transition(
    record: Transaction,
    outcome: TransactionStatus,
    gateway_response: Mapping[str, Any],
    now: Optional[datetime] = None
) -> TransitionResult:
    """
    Apply a terminal outcome to a record.

    Args:
        record: Record as currently stored
        outcome: Requested terminal status
        gateway_response: Raw callback fields to attach
        now: Transition timestamp (defaults to current UTC time)

    Returns:
        TransitionResult with the record to persist, or the unchanged record
        and applied=False on replay

    Raises:
        ValueError: If outcome is not terminal
        StateInconsistencyError: If the record is terminal with another outcome
    """
    if not outcome.is_terminal:
        raise ValueError(f"Cannot transition to non-terminal status {outcome.value}")

    if record.status.is_terminal:
        if record.status == outcome:
            return TransitionResult(record=record, applied=False)
        raise StateInconsistencyError(record.id, record.status.value, outcome.value)

    stamp = now or datetime.now(timezone.utc)
    update: Dict[str, Any] = {
        "status": outcome,
        "gateway_response": dict(gateway_response),
    }
    if outcome == TransactionStatus.COMPLETED:
        update["completed_at"] = stamp
    else:
        update["failed_at"] = stamp

    return TransitionResult(record=record.model_copy(update=update), applied=True)
