"""
Subscription error taxonomy.

Expected conditions (store unavailable, user cancelled) are modelled as
distinct exception types so callers can special-case them without string
matching. Integrity failures are raised and caught at the reconciler
boundary, where they are converted into a free-plan commit.
"""

from enum import Enum
from typing import Optional


class StoreErrorCode(str, Enum):
    """Error codes surfaced by the platform purchase store"""
    NOT_AVAILABLE = "E_IAP_NOT_AVAILABLE"
    USER_CANCELLED = "E_USER_CANCELLED"
    NOT_READY = "E_NOT_READY"
    NETWORK = "E_NETWORK"
    UNKNOWN = "E_UNKNOWN"


class SubscriptionError(Exception):
    """Base class for all subscription errors"""
    pass


class StoreError(SubscriptionError):
    """Raised by the platform purchase store"""

    def __init__(self, message: str, code: StoreErrorCode = StoreErrorCode.UNKNOWN):
        self.code = code
        self.message = message
        super().__init__(message)

    @classmethod
    def from_code(cls, code: str, message: Optional[str] = None) -> "StoreError":
        """Build the most specific error type for a raw platform code"""
        try:
            error_code = StoreErrorCode(code)
        except ValueError:
            error_code = StoreErrorCode.UNKNOWN

        error_types = {
            StoreErrorCode.NOT_AVAILABLE: StoreNotAvailableError,
            StoreErrorCode.USER_CANCELLED: PurchaseCancelledError,
            StoreErrorCode.NOT_READY: StoreNotReadyError,
        }
        error_type = error_types.get(error_code)
        if error_type:
            return error_type(message or code)
        return cls(message or code, error_code)


class StoreNotAvailableError(StoreError):
    """Purchases are not possible in this environment (simulator, dev build)"""

    def __init__(self, message: str = "In-app purchases are not available"):
        super().__init__(message, StoreErrorCode.NOT_AVAILABLE)


class PurchaseCancelledError(StoreError):
    """The user dismissed the platform purchase sheet"""

    def __init__(self, message: str = "Purchase cancelled by user"):
        super().__init__(message, StoreErrorCode.USER_CANCELLED)


class StoreNotReadyError(StoreError):
    """A store operation was attempted before the connection was established"""

    def __init__(self, message: str = "Purchase store is not connected"):
        super().__init__(message, StoreErrorCode.NOT_READY)


class RemoteSyncError(SubscriptionError):
    """Raised when the remote subscription database cannot be written or read"""
    pass


class ValidationTimeoutError(SubscriptionError):
    """Receipt validation did not finish within its deadline"""
    pass


class UnknownProductError(SubscriptionError):
    """A purchase references a product identifier with no plan mapping"""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Unknown product ID: {product_id}")


class UnknownPlanError(SubscriptionError):
    """A plan identifier is not part of the plan catalog"""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Invalid plan ID: {plan_id}")
