"""
Outcome Forwarder

Notifies the downstream consumer of a transaction's terminal outcome with a
single JSON POST. Delivery is at-least-once from the consumer's point of view
(gateway retries may re-trigger it), so the consumer must be idempotent on
transactionId.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..exceptions import ForwardingError
from ..models.transactions import Transaction, TransactionStatus

logger = logging.getLogger(__name__)

USER_AGENT = "CMI-Payment-Integration/1.0"

# Classification labels expected by the consumer
FORWARD_STATUS = {
    TransactionStatus.COMPLETED: "success",
    TransactionStatus.FAILED: "failed",
    TransactionStatus.SECURITY_FAILED: "security_failed",
}


def build_payload(record: Transaction, classification: TransactionStatus) -> Dict[str, Any]:
    """Build the fixed-shape notification body."""
    return {
        "transactionId": record.id,
        "amount": float(record.amount),
        "email": record.contact.email,
        "name": record.contact.name,
        "phone": record.contact.phone,
        "description": record.description,
        "status": FORWARD_STATUS[classification],
        "completedAt": record.completed_at.isoformat() if record.completed_at else None,
        "failedAt": record.failed_at.isoformat() if record.failed_at else None,
        "cmiResponse": record.gateway_response,
        "extra": record.extra,
    }


class OutcomeForwarder:
    """
    HTTP sink for terminal outcomes.

    A transport can be injected for tests (httpx.MockTransport).
    """

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.endpoint_url = endpoint_url if endpoint_url is not None else settings.forward_endpoint_url
        self.api_key = api_key if api_key is not None else settings.forward_api_key
        self.timeout = timeout or settings.forward_timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": USER_AGENT,
        }

    async def notify(self, record: Transaction, classification: TransactionStatus) -> Dict[str, Any]:
        """
        Deliver one outcome notification.

        Returns:
            Parsed JSON response body ({} if the body is not JSON)

        Raises:
            ForwardingError: Endpoint unset, transport error, timeout or non-2xx
        """
        if not self.endpoint_url:
            raise ForwardingError(
                "Forwarding endpoint is not configured",
                {"transaction_id": record.id}
            )

        payload = build_payload(record, classification)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint_url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise ForwardingError(
                f"Forwarding request failed: {type(e).__name__}: {e}",
                {"transaction_id": record.id}
            ) from e

        if not response.is_success:
            raise ForwardingError(
                f"Consumer returned {response.status_code}: {response.reason_phrase}",
                {"transaction_id": record.id, "status_code": response.status_code}
            )

        logger.info(f"Forwarded {payload['status']} outcome for {record.id}")

        try:
            return response.json()
        except ValueError:
            return {}
