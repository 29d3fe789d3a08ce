import json
from datetime import datetime, timezone
from decimal import Decimal

import fakeredis
import httpx
import pytest

from cmi_gateway.models.transactions import Contact, Transaction
from cmi_gateway.services.callback_processor import CallbackProcessor
from cmi_gateway.services.outcome_forwarder import OutcomeForwarder
from cmi_gateway.services.signature_service import excluded_field_set, sign_fields
from cmi_gateway.services.transaction_store import TransactionStore

STORE_KEY = "TEST|store\\key"
FORWARD_URL = "http://consumer.test/notify"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(redis_client):
    return TransactionStore(redis_client, ttl_seconds=3600)


class RecordingConsumer:
    """Downstream consumer double answering with a configurable status."""

    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    @property
    def payloads(self):
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def forwarder(consumer):
    return OutcomeForwarder(
        endpoint_url=FORWARD_URL,
        api_key="bubble-key",
        timeout=10.0,
        transport=httpx.MockTransport(consumer),
    )


@pytest.fixture
def processor(store, forwarder):
    return CallbackProcessor(
        store,
        forwarder,
        store_key=STORE_KEY,
        success_code="00",
        excluded_fields=["customData"],
    )


def make_transaction(transaction_id="TXN_1700000000000_abc123def", **overrides):
    data = dict(
        id=transaction_id,
        amount=Decimal("100.00"),
        contact=Contact(email="a@b.com", phone="+212600000000", name="Ali"),
        created_at=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
        extra={"guest_id": "g_42", "donated_to": "school"},
    )
    data.update(overrides)
    return Transaction(**data)


def make_callback(transaction_id, result_code="00", secret=STORE_KEY, **extra_fields):
    """Callback fields as CMI posts them, signed with the given secret."""
    fields = {
        "ReturnOid": transaction_id,
        "oid": transaction_id,
        "ProcReturnCode": result_code,
        "Response": "Approved" if result_code == "00" else "Declined",
        "amount": "100.00",
        "currency": "504",
        "clientid": "600000000",
        "BillToName": "Ali",
        "email": "a@b.com",
        "tel": "+212600000000",
        "mdStatus": "1",
        "TransId": "25001LXYZ",
        "EXTRA.TRXDATE": "20250101 12:00:00",
        "encoding": "UTF-8",
        "hashAlgorithm": "ver3",
    }
    fields.update(extra_fields)
    return sign_fields(fields, secret, excluded_field_set(["customData"]))
