"""
Pydantic Transaction Model

Represents a payment transaction from creation until its single terminal
callback outcome.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, model_validator

DEFAULT_DESCRIPTION = "Payment"


class TransactionStatus(str, Enum):
    """Lifecycle states. Everything except PENDING is terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SECURITY_FAILED = "security_failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class Contact(BaseModel):
    """Payer contact details, all required."""
    email: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    name: str = Field(min_length=1)


class Transaction(BaseModel):
    """
    Transaction record as persisted under ``transaction:<id>``.

    Invariants:
    - id never changes once assigned
    - completed_at and failed_at are never both set
    - gateway_response holds the raw callback fields of the terminal transition
    - extra is opaque caller data, surfaced unchanged when forwarding
    """
    id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    contact: Contact
    description: str = DEFAULT_DESCRIPTION
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    gateway_response: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_terminal_timestamps(self):
        """Ensure a record is never both completed and failed."""
        if self.completed_at is not None and self.failed_at is not None:
            raise ValueError(f"Transaction {self.id} cannot have both completed_at and failed_at")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "TXN_1729000000000_k3j9x0a1b",
                "amount": "100.00",
                "contact": {"email": "a@b.com", "phone": "+212600000000", "name": "Ali"},
                "description": "Payment",
                "status": "pending",
                "created_at": "2025-10-17T14:35:00Z",
                "completed_at": None,
                "failed_at": None,
                "gateway_response": None,
                "extra": {"guest_id": "g_42"}
            }
        }
    }


class TransactionStatusView(BaseModel):
    """Read-only projection returned by the status query."""
    id: str
    status: TransactionStatus
    amount: Decimal
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionStatusView":
        return cls(
            id=transaction.id,
            status=transaction.status,
            amount=transaction.amount,
            created_at=transaction.created_at,
            completed_at=transaction.completed_at,
            failed_at=transaction.failed_at,
        )
