"""
Subscription Data Models

Defines the core data structures for the subscription system:
- Plan catalog and store product mapping
- The locally cached subscription snapshot
- Purchase records handed over by the platform store
"""

from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any, List
from datetime import datetime

from subscription.errors import UnknownPlanError, UnknownProductError


MILLIS_PER_DAY = 24 * 60 * 60 * 1000


class PlanId(str, Enum):
    """Subscription plans sold in the app"""
    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_MAX_MONTHLY = "pro_max_monthly"
    PREMIUM_YEARLY = "premium_yearly"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class SubscriptionPlan:
    """
    A product tier and the limits it grants.

    Usage is metered in translation units: a translation to N target
    languages costs N / max_languages units of the daily allowance.
    """
    id: PlanId
    name: str
    price: str
    price_value: float
    currency: str
    period: BillingPeriod
    daily_translations: int
    max_languages: int
    has_ads: bool

    @property
    def duration_days(self) -> int:
        return 365 if self.period == BillingPeriod.YEARLY else 30

    def end_date_from(self, start_ms: int) -> int:
        """End of the billing period starting at start_ms (0 for free)"""
        if self.id == PlanId.FREE:
            return 0
        return start_ms + self.duration_days * MILLIS_PER_DAY


SUBSCRIPTION_PLANS: Dict[PlanId, SubscriptionPlan] = {
    PlanId.FREE: SubscriptionPlan(
        id=PlanId.FREE,
        name="Free",
        price="$0",
        price_value=0,
        currency="USD",
        period=BillingPeriod.MONTHLY,
        daily_translations=100,
        max_languages=2,
        has_ads=True,
    ),
    PlanId.PRO_MONTHLY: SubscriptionPlan(
        id=PlanId.PRO_MONTHLY,
        name="Pro",
        price="$2.99",
        price_value=2.99,
        currency="USD",
        period=BillingPeriod.MONTHLY,
        daily_translations=200,
        max_languages=5,
        has_ads=False,
    ),
    PlanId.PRO_MAX_MONTHLY: SubscriptionPlan(
        id=PlanId.PRO_MAX_MONTHLY,
        name="Pro Max",
        price="$4.99",
        price_value=4.99,
        currency="USD",
        period=BillingPeriod.MONTHLY,
        daily_translations=500,
        max_languages=5,
        has_ads=False,
    ),
    PlanId.PREMIUM_YEARLY: SubscriptionPlan(
        id=PlanId.PREMIUM_YEARLY,
        name="Premium Yearly",
        price="$29.99",
        price_value=29.99,
        currency="USD",
        period=BillingPeriod.YEARLY,
        daily_translations=200,
        max_languages=5,
        has_ads=False,
    ),
}

# App Store / Play Store product identifiers
IAP_PRODUCT_IDS = {
    "PRO_MONTHLY": "com.polylingo.pro.monthly",
    "PRO_MAX_MONTHLY": "com.polylingo.promax.monthly",
    "PREMIUM_YEARLY": "com.polylingo.premium.yearly",
}

PRODUCT_TO_PLAN: Dict[str, PlanId] = {
    IAP_PRODUCT_IDS["PRO_MONTHLY"]: PlanId.PRO_MONTHLY,
    IAP_PRODUCT_IDS["PRO_MAX_MONTHLY"]: PlanId.PRO_MAX_MONTHLY,
    IAP_PRODUCT_IDS["PREMIUM_YEARLY"]: PlanId.PREMIUM_YEARLY,
}


def get_plan(plan_id: str) -> SubscriptionPlan:
    """Look up a plan, raising UnknownPlanError for ids outside the catalog"""
    try:
        return SUBSCRIPTION_PLANS[PlanId(plan_id)]
    except ValueError:
        raise UnknownPlanError(str(plan_id))


def plan_for_product(product_id: str) -> PlanId:
    """Map a store product identifier to its plan"""
    plan_id = PRODUCT_TO_PLAN.get(product_id)
    if plan_id is None:
        raise UnknownProductError(product_id)
    return plan_id


@dataclass
class StoreProduct:
    """A subscription product as listed by the platform store"""
    product_id: str
    title: str
    description: str
    price: str
    currency: str
    localized_price: str
    country_code: Optional[str] = None


def simulation_products() -> List[StoreProduct]:
    """
    Products built from the plan catalog.

    Used by development builds when the store has no products registered
    or cannot be reached.
    """
    products = []
    for product_id, plan_id in PRODUCT_TO_PLAN.items():
        plan = SUBSCRIPTION_PLANS[plan_id]
        products.append(StoreProduct(
            product_id=product_id,
            title=f"{plan.name} Subscription",
            description=f"{plan.name} features with {plan.period.value} billing",
            price=f"{plan.price_value:.2f}",
            currency=plan.currency,
            localized_price=plan.price,
            country_code="US",
        ))
    return products


def to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def iso_to_millis(value: Optional[str]) -> int:
    """ISO-8601 timestamp to epoch millis; None (no expiry) maps to 0"""
    if not value:
        return 0
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return to_millis(moment)


def local_date_string(moment: Optional[datetime] = None) -> str:
    """Local calendar day as YYYY-MM-DD"""
    return (moment or datetime.now()).date().isoformat()


@dataclass
class DailyUsage:
    """Fractional translation units consumed on one calendar day"""
    date: str
    count: float = 0.0

    def to_dict(self) -> dict:
        return {"date": self.date, "count": self.count}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyUsage":
        return cls(date=str(data.get("date", "")), count=float(data.get("count", 0) or 0))


@dataclass
class SubscriptionSnapshot:
    """
    The authoritative local entitlement record.

    Stored as one JSON blob in the local cache. Dates are epoch millis and
    end_date == 0 means the plan never expires.
    """
    plan_id: PlanId
    is_active: bool
    start_date: int
    end_date: int
    daily_usage: DailyUsage
    is_trial_used: bool = False
    original_transaction_id: Optional[str] = None

    @classmethod
    def default(cls, now: Optional[datetime] = None) -> "SubscriptionSnapshot":
        """Free plan used on first launch"""
        now = now or datetime.now()
        return cls(
            plan_id=PlanId.FREE,
            is_active=True,
            start_date=to_millis(now),
            end_date=0,
            daily_usage=DailyUsage(date=local_date_string(now), count=0.0),
            is_trial_used=False,
        )

    @property
    def plan(self) -> SubscriptionPlan:
        return SUBSCRIPTION_PLANS[self.plan_id]

    @property
    def is_free(self) -> bool:
        return self.plan_id == PlanId.FREE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once a plan with an end date has passed it"""
        if self.end_date <= 0:
            return False
        return to_millis(now or datetime.now()) > self.end_date

    def usage_for(self, day: str) -> float:
        """Usage counted for the given day (0 after a rollover)"""
        if self.daily_usage.date != day:
            return 0.0
        return self.daily_usage.count

    def to_dict(self) -> dict:
        """Convert to the camelCase JSON layout used by the local cache"""
        data = {
            "planId": self.plan_id.value,
            "isActive": self.is_active,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "dailyUsage": self.daily_usage.to_dict(),
            "isTrialUsed": self.is_trial_used,
        }
        if self.original_transaction_id:
            data["originalTransactionId"] = self.original_transaction_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionSnapshot":
        """Create from dictionary; raises UnknownPlanError for a bad plan id"""
        plan = get_plan(data.get("planId", PlanId.FREE.value))
        return cls(
            plan_id=plan.id,
            is_active=bool(data.get("isActive", True)),
            start_date=int(data.get("startDate", 0) or 0),
            end_date=int(data.get("endDate", 0) or 0),
            daily_usage=DailyUsage.from_dict(data.get("dailyUsage") or {}),
            is_trial_used=bool(data.get("isTrialUsed", False)),
            original_transaction_id=data.get("originalTransactionId"),
        )


@dataclass
class PurchaseRecord:
    """
    A purchase as reported by the platform store.

    transaction_id is the original (root) transaction identifier, stable
    across renewals. Never persisted by the reconciler itself.
    """
    product_id: str
    transaction_id: str
    transaction_date: int
    receipt: str
    purchase_token: Optional[str] = None
    platform: str = "ios"

    @property
    def purchase_key(self) -> str:
        """Identity used to suppress duplicate event delivery"""
        return f"{self.transaction_id}:{self.transaction_date}"


@dataclass
class ValidationResult:
    """Outcome of a receipt validation"""
    valid: bool
    expires_at: Optional[int] = None  # epoch millis
    reason: Optional[str] = None


@dataclass
class RemoteSubscription:
    """Latest active subscription row stored remotely for a transaction id"""
    plan_id: str
    is_active: bool
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    original_transaction_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RemoteSubscription":
        return cls(
            plan_id=row["plan_id"],
            is_active=bool(row.get("is_active", False)),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            original_transaction_id=row.get("original_transaction_identifier_ios"),
        )
