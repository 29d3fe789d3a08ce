"""
Pydantic Callback Models

Gateway acknowledgment and payment initiation request/response shapes.
"""
from decimal import Decimal
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

from .transactions import TransactionStatus

# Literal acknowledgment bodies required by the CMI callback protocol.
# APPROVED acknowledges a processed-but-declined payment, not an approval.
ACK_POSTAUTH = "ACTION=POSTAUTH"
ACK_APPROVED = "APPROVED"
ACK_FAILED = "FAILED"

ACK_BY_STATUS = {
    TransactionStatus.COMPLETED: ACK_POSTAUTH,
    TransactionStatus.FAILED: ACK_APPROVED,
    TransactionStatus.SECURITY_FAILED: ACK_FAILED,
}


class GatewayAck(BaseModel):
    """Plain-text response returned to the gateway for one callback."""
    status_code: int = 200
    body: str
    outcome: Optional[TransactionStatus] = None
    error_code: Optional[str] = None

    @classmethod
    def for_outcome(cls, outcome: TransactionStatus) -> "GatewayAck":
        return cls(body=ACK_BY_STATUS[outcome], outcome=outcome)


class CreatePaymentRequest(BaseModel):
    """
    Payment initiation request.

    Fields are optional at the schema level so that missing contact data is
    reported as a single "Missing required fields" validation error.
    """
    amount: Optional[Decimal] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class PaymentForm(BaseModel):
    """Auto-submit form the browser posts to the CMI hosted payment page."""
    action: str
    method: str = "POST"
    fields: Dict[str, str]


class CreatePaymentResponse(BaseModel):
    success: bool = True
    transactionId: str
    paymentForm: PaymentForm
