"""
FastAPI dependencies resolving the application-level services.

The instances are built in the application lifespan and stored on
app.state; tests replace them through app.dependency_overrides.
"""
from fastapi import Request

from ..services.callback_processor import CallbackProcessor
from ..services.transaction_store import TransactionStore


def get_store(request: Request) -> TransactionStore:
    return request.app.state.store


def get_processor(request: Request) -> CallbackProcessor:
    return request.app.state.processor
