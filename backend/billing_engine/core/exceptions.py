"""
Billing error taxonomy.

Every error raised by the engine towards a caller derives from BillingError,
which carries an HTTP status and an optional payload so the API layer can
render it as a {success, message, data} envelope.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base billing exception."""

    http_status = 500

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}


class ValidationError(BillingError):
    """Missing or malformed request fields. Rejected before any gateway call."""

    http_status = 400


class NotFoundError(ValidationError):
    """Referenced record does not exist."""

    http_status = 404


class StateConflictError(BillingError):
    """Precondition failure on subscription state. No gateway call attempted."""

    http_status = 409


class TokenizationIneligibleError(StateConflictError):
    """Card brand or BIN does not qualify for network tokenization."""


class GatewayDeclineError(BillingError):
    """
    The gateway answered and the outcome is a decline.

    Not a system fault: the attempt is already persisted as a Transaction and
    has been handed to the retry policy by the time this is raised.
    """

    http_status = 402

    def __init__(
        self,
        message: str,
        transaction=None,
        classification=None,
        decision=None,
        data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, data)
        self.transaction = transaction
        self.classification = classification
        self.decision = decision


class GatewayUnavailableError(BillingError):
    """
    Network error, timeout or 5xx from the gateway. Outcome unknown.

    Must never be treated as a decline: the charge may have gone through.
    """

    http_status = 502

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        timed_out: bool = False,
        data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, data)
        self.order_id = order_id
        self.timed_out = timed_out
        if timed_out:
            self.http_status = 504


class VaultTokenMissingError(GatewayUnavailableError):
    """
    The first charge was approved but no vault token came back.

    The customer has paid and no subscription exists; the attempt is queued
    for reconciliation.
    """


class StoreError(BillingError):
    """Persistence failure. Logged loudly, never dropped."""

    http_status = 500
