"""
Payment Service

Creates pending transactions and the signed redirect form that sends the
payer to the CMI 3-D hosted payment page. This is the only writer of
pending records.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from ..config import settings
from ..exceptions import ValidationError
from ..models.callbacks import CreatePaymentRequest, CreatePaymentResponse, PaymentForm
from ..models.transactions import Contact, Transaction, DEFAULT_DESCRIPTION
from .signature_service import excluded_field_set, sign_fields
from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)


def generate_transaction_id() -> str:
    """Time plus random suffix: unique enough per store TTL, not cryptographic."""
    return f"TXN_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def build_payment_form(transaction: Transaction) -> PaymentForm:
    """
    Build the auto-submit form for the CMI hosted page.

    Signed with the same ver3 hash used to verify callbacks.
    """
    fields: Dict[str, str] = {
        "clientid": settings.cmi_client_id,
        "storetype": "3D_PAY_HOSTING",
        "trantype": "PreAuth",
        "amount": format(transaction.amount, "f"),
        "currency": settings.cmi_currency,
        "oid": transaction.id,
        "okUrl": settings.ok_url,
        "failUrl": settings.fail_url,
        "callbackUrl": settings.callback_url,
        "shopurl": settings.shop_url,
        "lang": settings.cmi_lang,
        "email": transaction.contact.email,
        "BillToName": transaction.contact.name,
        "tel": transaction.contact.phone,
        "rnd": uuid.uuid4().hex,
        "hashAlgorithm": "ver3",
        "encoding": "UTF-8",
    }

    signed = sign_fields(
        fields,
        settings.cmi_store_key,
        excluded_field_set(settings.cmi_hash_excluded_fields)
    )
    return PaymentForm(action=settings.cmi_gateway_url, fields=signed)


async def create_payment(
    store: TransactionStore,
    request: CreatePaymentRequest
) -> CreatePaymentResponse:
    """
    Create a pending transaction and its redirect form.

    Raises:
        ValidationError: Missing or non-positive amount, or missing contact data
        StoreUnavailableError: Record could not be stored
    """
    if request.amount is None or not request.email or not request.phone or not request.name:
        raise ValidationError(
            "Missing required fields",
            {"required": ["amount", "email", "phone", "name"]}
        )
    if request.amount <= 0:
        raise ValidationError("Amount must be positive", {"amount": str(request.amount)})

    transaction = Transaction(
        id=generate_transaction_id(),
        amount=request.amount,
        contact=Contact(email=request.email, phone=request.phone, name=request.name),
        description=request.description or DEFAULT_DESCRIPTION,
        created_at=datetime.now(timezone.utc),
        extra=request.extra,
    )

    await store.create(transaction)

    if not settings.cmi_store_key:
        logger.warning(f"CMI store key not set; form for {transaction.id} will not verify at the gateway")

    logger.info(f"Created payment {transaction.id} amount={transaction.amount}")

    return CreatePaymentResponse(
        transactionId=transaction.id,
        paymentForm=build_payment_form(transaction)
    )
