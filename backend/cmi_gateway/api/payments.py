"""
Payments API Endpoints

Payment creation, CMI server-to-server callback and status lookup.

The callback endpoint always answers in text/plain with one of the
protocol tokens (ACTION=POSTAUTH, APPROVED, FAILED) or a plain 4xx/5xx body.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from typing import Any, Dict
import logging

from ..models.callbacks import CreatePaymentRequest, CreatePaymentResponse
from ..models.transactions import TransactionStatusView
from ..services.callback_processor import CallbackProcessor
from ..services.payment_service import create_payment
from ..services.transaction_store import TransactionStore
from .dependencies import get_processor, get_store

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_callback_fields(request: Request) -> Dict[str, Any]:
    """Parse a form-encoded or JSON callback body into a flat field map."""
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        body = await request.json()
        if not isinstance(body, dict):
            return {}
        return body

    form = await request.form()
    return {name: value for name, value in form.items() if isinstance(value, str)}


@router.post("/create")
async def create_payment_endpoint(
    request: CreatePaymentRequest,
    store: TransactionStore = Depends(get_store)
) -> CreatePaymentResponse:
    """
    Create a pending transaction and the signed CMI redirect form.

    Request Body:
        {
            "amount": "100.00",
            "email": str,
            "phone": str,
            "name": str,
            "description": str,  # optional, defaults to "Payment"
            "extra": Dict  # optional, forwarded unchanged with the outcome
        }

    Returns:
        {
            "success": true,
            "transactionId": str,
            "paymentForm": {"action": str, "method": "POST", "fields": Dict}
        }
    """
    return await create_payment(store, request)


@router.post("/callback", response_class=PlainTextResponse)
async def callback_endpoint(
    request: Request,
    processor: CallbackProcessor = Depends(get_processor)
) -> PlainTextResponse:
    """
    CMI server-to-server callback.

    Responses:
        200 ACTION=POSTAUTH  payment completed
        200 APPROVED         callback processed, payment not approved
        200 FAILED           signature verification failed
        400 FAILED           missing ReturnOid / oid
        404 FAILED           unknown or expired transaction
        503                  store unavailable, gateway should retry
        500                  unexpected error
    """
    try:
        fields = await _read_callback_fields(request)
    except ValueError as e:
        logger.warning(f"Unparseable callback body: {e}")
        fields = {}

    ack = await processor.handle(fields)
    return PlainTextResponse(ack.body, status_code=ack.status_code)


@router.get("/status/{transaction_id}")
async def get_transaction_status_endpoint(
    transaction_id: str,
    store: TransactionStore = Depends(get_store)
) -> TransactionStatusView:
    """
    Get transaction status.

    Path Parameters:
        transaction_id: Transaction identifier

    Returns:
        {id, status, amount, created_at, completed_at, failed_at}

    Example:
        GET /api/payments/status/TXN_1729000000000_k3j9x0a1b
    """
    logger.debug(f"Retrieving transaction status: {transaction_id}")

    transaction = await store.get(transaction_id)
    return TransactionStatusView.from_transaction(transaction)
