"""
CMI Gateway Exception Hierarchy

Error codes use the cmi: prefix so API consumers can tell them apart
from framework errors.
"""
from typing import Optional, Dict, Any


class GatewayError(Exception):
    """
    Base exception for all payment callback errors.

    Each subclass carries the HTTP status it maps to when it escapes
    to the API layer.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(GatewayError):
    """
    Request is missing required data.

    Examples:
    - Payment creation without amount, email, phone or name
    - Callback without ReturnOid / oid
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("cmi:request:invalid", message, details)


class TransactionNotFoundError(GatewayError):
    """
    Transaction is unknown or has expired from the store.

    The two cases are deliberately indistinguishable.
    """

    status_code = 404

    def __init__(self, transaction_id: str):
        super().__init__(
            "cmi:transaction:not_found",
            f"Transaction not found: {transaction_id}",
            {"transaction_id": transaction_id}
        )


class StoreUnavailableError(GatewayError):
    """
    Transaction store could not be reached or returned unreadable data.

    Surfaced as a server error so the gateway retries the callback.
    """

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("cmi:store:unavailable", message, details)


class StateInconsistencyError(GatewayError):
    """
    A terminal transaction received a callback with a different outcome.

    Never resolved by overwriting: log and alert, do not retry.
    """

    status_code = 409

    def __init__(self, transaction_id: str, recorded: str, requested: str):
        self.transaction_id = transaction_id
        self.recorded = recorded
        self.requested = requested
        super().__init__(
            "cmi:transaction:state_inconsistent",
            f"Transaction {transaction_id} is already {recorded}, refusing {requested}",
            {"transaction_id": transaction_id, "recorded": recorded, "requested": requested}
        )


class ConcurrentUpdateError(GatewayError):
    """
    Record changed between read and write.

    Carries the record as currently stored so the caller can re-evaluate.
    """

    status_code = 409

    def __init__(self, transaction_id: str, current: Any = None):
        self.current = current
        super().__init__(
            "cmi:transaction:concurrent_update",
            f"Transaction {transaction_id} was modified concurrently",
            {"transaction_id": transaction_id}
        )


class ForwardingError(GatewayError):
    """
    Downstream consumer rejected or did not answer the outcome notification.

    Always non-fatal.
    """

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("cmi:forwarding:failed", message, details)
