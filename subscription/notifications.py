"""
User-facing notices emitted by the entitlement reconciler.

The reconciler never blocks on the user: it hands a Notice to an optional
callback and carries on. The host application decides how to render it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from utils.logger import logger


class NoticeKind(str, Enum):
    """Categories the UI can map to different retry affordances"""
    # Failures
    LOGIN_REQUIRED = "login_required"
    NETWORK = "network"
    GENERIC = "generic"
    ENTITLEMENT_REVERTED = "entitlement_reverted"

    # Informational
    PURCHASE_COMPLETED = "purchase_completed"
    RESTORE_COMPLETED = "restore_completed"
    NOTHING_TO_RESTORE = "nothing_to_restore"
    STORE_UNAVAILABLE = "store_unavailable"


_ERROR_KINDS = {
    NoticeKind.LOGIN_REQUIRED,
    NoticeKind.NETWORK,
    NoticeKind.GENERIC,
    NoticeKind.ENTITLEMENT_REVERTED,
}

DEFAULT_MESSAGES = {
    NoticeKind.LOGIN_REQUIRED: "Please sign in to your store account and try again.",
    NoticeKind.NETWORK: "The store did not respond in time. Please check your connection and try again.",
    NoticeKind.GENERIC: "Something went wrong while processing your purchase. Please try again.",
    NoticeKind.ENTITLEMENT_REVERTED: "Your purchase could not be verified. You are on the free plan until it is retried.",
    NoticeKind.PURCHASE_COMPLETED: "Your subscription is now active.",
    NoticeKind.RESTORE_COMPLETED: "Your subscription has been restored.",
    NoticeKind.NOTHING_TO_RESTORE: "No active subscription was found to restore.",
    NoticeKind.STORE_UNAVAILABLE: "In-app purchases are not available on this device.",
}


@dataclass
class Notice:
    kind: NoticeKind
    message: str

    @property
    def is_error(self) -> bool:
        return self.kind in _ERROR_KINDS

    @classmethod
    def of(cls, kind: NoticeKind, message: Optional[str] = None) -> "Notice":
        return cls(kind=kind, message=message or DEFAULT_MESSAGES[kind])


NoticeCallback = Callable[[Notice], None]


def emit_notice(callback: Optional[NoticeCallback], kind: NoticeKind, message: Optional[str] = None) -> Notice:
    """Deliver a notice to the host; a failing callback is logged, never raised"""
    notice = Notice.of(kind, message)
    log = logger.warning if notice.is_error else logger.info
    log(f"Notice [{notice.kind.value}]: {notice.message}")

    if callback is not None:
        try:
            callback(notice)
        except Exception as e:
            logger.error(f"Notice callback failed for {notice.kind.value}: {e}")
    return notice
