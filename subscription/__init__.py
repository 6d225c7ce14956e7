"""
Subscription Entitlement Engine for PolyLingo

Decides which plan a user is entitled to and keeps three independently
failing stores consistent:
- Local snapshot cache (works offline, single source of truth when remote is down)
- Platform purchase store (App Store / Play Store)
- Remote subscription and usage database, keyed by transaction id

Architecture:
- UI triggers funnel into the EntitlementReconciler
- The reconciler lists active purchases, validates the latest receipt,
  compares with the remote record and commits the resolved snapshot
- Anything that cannot be verified ends on the free plan
- Users with no purchase are metered on-device by fingerprint
"""

from subscription.models import (
    PlanId,
    SubscriptionPlan,
    SubscriptionSnapshot,
    DailyUsage,
    PurchaseRecord,
    StoreProduct,
    ValidationResult,
    SUBSCRIPTION_PLANS,
    IAP_PRODUCT_IDS,
    get_plan,
    plan_for_product,
)
from subscription.errors import (
    SubscriptionError,
    StoreError,
    StoreErrorCode,
    StoreNotAvailableError,
    StoreNotReadyError,
    PurchaseCancelledError,
    RemoteSyncError,
    UnknownProductError,
    UnknownPlanError,
)
from subscription.local_store import KeyValueStore, JsonFileStore
from subscription.notifications import Notice, NoticeKind
from subscription.device_fingerprint import DeviceFingerprint, DeviceProfile
from subscription.usage_meter import DeviceUsageMeter, UsageCheck
from subscription.remote_sync import RemoteSyncClient, SupabaseSyncClient, create_remote_sync_client
from subscription.receipt_validator import ReceiptValidator, HttpReceiptValidator
from subscription.purchase_store import PlatformPurchaseStore, PurchaseStoreAdapter
from subscription.subscription_service import SubscriptionService
from subscription.reconciler import EntitlementReconciler, build_reconciler

__all__ = [
    # Data model
    'PlanId',
    'SubscriptionPlan',
    'SubscriptionSnapshot',
    'DailyUsage',
    'PurchaseRecord',
    'StoreProduct',
    'ValidationResult',
    'SUBSCRIPTION_PLANS',
    'IAP_PRODUCT_IDS',
    'get_plan',
    'plan_for_product',
    # Errors
    'SubscriptionError',
    'StoreError',
    'StoreErrorCode',
    'StoreNotAvailableError',
    'StoreNotReadyError',
    'PurchaseCancelledError',
    'RemoteSyncError',
    'UnknownProductError',
    'UnknownPlanError',
    # Storage and metering
    'KeyValueStore',
    'JsonFileStore',
    'DeviceFingerprint',
    'DeviceProfile',
    'DeviceUsageMeter',
    'UsageCheck',
    # Collaborators
    'RemoteSyncClient',
    'SupabaseSyncClient',
    'create_remote_sync_client',
    'ReceiptValidator',
    'HttpReceiptValidator',
    'PlatformPurchaseStore',
    'PurchaseStoreAdapter',
    # Core
    'SubscriptionService',
    'EntitlementReconciler',
    'build_reconciler',
    'Notice',
    'NoticeKind',
]
