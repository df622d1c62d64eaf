"""
Error taxonomy for the claim lifecycle, verification flow and on-chain adapters.

Every error carries a human-readable message and the HTTP status a routing
layer should map it to. AdapterFailureError never leaves ClaimService.disburse.
"""

from typing import Optional


class AidClaimsError(Exception):
    """Base class for all service errors"""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(AidClaimsError):
    """Referenced entity does not exist"""

    http_status = 404


class InvalidTransitionError(AidClaimsError):
    """Claim is not in the state the requested transition starts from"""

    http_status = 400

    def __init__(self, current_status: Optional[str], target_status: str, message: Optional[str] = None):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(message or f"Cannot transition from {current_status} to {target_status}")


class InvalidStateError(AidClaimsError):
    """Guard violated: session inactive, expired, or a per-session limit reached"""

    http_status = 400


class InvalidInputError(AidClaimsError):
    """Malformed request data, including a wrong OTP code"""

    http_status = 400


class RateLimitedError(AidClaimsError):
    http_status = 429


class ConfigurationError(AidClaimsError):
    """Invalid or unsupported configuration, raised at startup"""


class AdapterNotImplementedError(ConfigurationError):
    """A named on-chain adapter exists but has no implementation"""


class AdapterFailureError(AidClaimsError):
    """On-chain adapter call failed (exception, timeout, or explicit failed status)"""

    http_status = 502


class OnchainOperationError(AdapterFailureError):
    """Adapter returned status=failed for a queued on-chain job"""

    def __init__(self, operation: str, message: Optional[str] = None):
        self.operation = operation
        super().__init__(message or f"Onchain operation failed: {operation}")
