from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from cmi_gateway.exceptions import StateInconsistencyError
from cmi_gateway.models.transactions import Transaction, TransactionStatus
from cmi_gateway.services.state_machine import apply_transition, classify_outcome

from conftest import make_transaction

NOW = datetime(2025, 1, 1, 12, 5, tzinfo=timezone.utc)
LATER = datetime(2025, 1, 1, 12, 9, tzinfo=timezone.utc)
RESPONSE = {"ReturnOid": "TXN_1700000000000_abc123def", "ProcReturnCode": "00"}


class TestClassifyOutcome:
    def test_valid_signature_success_code(self):
        assert classify_outcome(True, "00") == TransactionStatus.COMPLETED

    def test_valid_signature_other_code(self):
        assert classify_outcome(True, "05") == TransactionStatus.FAILED
        assert classify_outcome(True, None) == TransactionStatus.FAILED

    def test_invalid_signature_wins_over_result_code(self):
        assert classify_outcome(False, "00") == TransactionStatus.SECURITY_FAILED
        assert classify_outcome(False, "05") == TransactionStatus.SECURITY_FAILED

    def test_custom_success_code(self):
        assert classify_outcome(True, "000", success_code="000") == TransactionStatus.COMPLETED


class TestApplyTransition:
    def test_pending_to_completed(self):
        result = apply_transition(make_transaction(), TransactionStatus.COMPLETED, RESPONSE, now=NOW)

        assert result.applied
        assert result.record.status == TransactionStatus.COMPLETED
        assert result.record.completed_at == NOW
        assert result.record.failed_at is None
        assert result.record.gateway_response == RESPONSE

    @pytest.mark.parametrize("outcome", [TransactionStatus.FAILED, TransactionStatus.SECURITY_FAILED])
    def test_pending_to_failure_states_stamp_failed_at(self, outcome):
        result = apply_transition(make_transaction(), outcome, RESPONSE, now=NOW)

        assert result.record.status == outcome
        assert result.record.failed_at == NOW
        assert result.record.completed_at is None

    def test_original_record_is_not_mutated(self):
        record = make_transaction()
        apply_transition(record, TransactionStatus.COMPLETED, RESPONSE, now=NOW)
        assert record.status == TransactionStatus.PENDING
        assert record.completed_at is None

    def test_extra_survives_transition(self):
        record = make_transaction()
        result = apply_transition(record, TransactionStatus.FAILED, RESPONSE, now=NOW)
        assert result.record.extra == record.extra

    def test_replay_of_same_outcome_is_noop(self):
        first = apply_transition(make_transaction(), TransactionStatus.COMPLETED, RESPONSE, now=NOW).record
        replay = apply_transition(first, TransactionStatus.COMPLETED, {"other": "fields"}, now=LATER)

        assert not replay.applied
        assert replay.record is first
        assert replay.record.completed_at == NOW
        assert replay.record.gateway_response == RESPONSE

    def test_different_outcome_on_terminal_record_raises(self):
        completed = apply_transition(make_transaction(), TransactionStatus.COMPLETED, RESPONSE, now=NOW).record

        with pytest.raises(StateInconsistencyError) as exc_info:
            apply_transition(completed, TransactionStatus.FAILED, RESPONSE, now=LATER)

        assert exc_info.value.recorded == "completed"
        assert exc_info.value.requested == "failed"

    def test_pending_is_not_a_valid_target(self):
        with pytest.raises(ValueError):
            apply_transition(make_transaction(), TransactionStatus.PENDING, RESPONSE)


class TestTransactionModel:
    def test_completed_and_failed_are_mutually_exclusive(self):
        with pytest.raises(PydanticValidationError):
            make_transaction(completed_at=NOW, failed_at=NOW)

    def test_amount_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            make_transaction(amount="0")

    def test_round_trips_through_json(self):
        record = apply_transition(make_transaction(), TransactionStatus.COMPLETED, RESPONSE, now=NOW).record
        assert Transaction.model_validate_json(record.model_dump_json()) == record
