"""Error taxonomy shared by the ledger, the reconciler and the API layer."""
from typing import Any, Optional


class CrowdfundError(Exception):
    """Base exception for domain errors."""

    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(CrowdfundError):
    """Raised when input is missing or out of bounds."""

    status_code = 400


class NotFoundError(CrowdfundError):
    """Raised when a campaign, donation or transaction code is unknown."""

    status_code = 404


class SignatureError(CrowdfundError):
    """Raised when a gateway payload fails MAC verification."""

    status_code = 400


class ConflictError(CrowdfundError):
    """Raised on an invalid donation status transition."""

    status_code = 409


class AmountMismatchError(CrowdfundError):
    """Raised when a callback amount disagrees with the stored donation."""

    status_code = 400


class GatewayError(CrowdfundError):
    """Raised when a payment gateway fails or rejects a request."""

    status_code = 500

    def __init__(
        self,
        message: str,
        return_code: Optional[int] = None,
        reason: Optional[str] = None,
        retryable: bool = True,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.return_code = return_code
        self.reason = reason
        self.retryable = retryable


class GatewayTimeoutError(GatewayError):
    """Raised when a payment gateway does not answer within the timeout."""

    status_code = 504


class LedgerError(CrowdfundError):
    """Raised when a donation transition and its campaign update cannot be applied together."""

    status_code = 500
