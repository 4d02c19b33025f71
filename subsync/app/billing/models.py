"""Domain models for the billing reconciliation system."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

USER_ID_METADATA_KEY = "userId"
PLAN_ID_METADATA_KEY = "planId"
INTERVAL_METADATA_KEY = "interval"

PLACEHOLDER_PREFIX = "sub_placeholder_"
CUSTOMER_ID_PREFIX = "cus_"
SUBSCRIPTION_ID_PREFIX = "sub_"


class PlanKey(str, Enum):
    """Canonical identifiers for subscription plans."""

    BASIC = "basic"
    PRO = "pro"
    BUSINESS = "business"
    VERIFICATION = "verification"


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value: object) -> Optional["BillingInterval"]:
        """Accept both application (``monthly``) and provider (``month``) spellings."""

        if value is None:
            return None
        lowered = str(value).strip().lower()
        if lowered in {"month", "monthly"}:
            return cls.MONTHLY
        if lowered in {"year", "annual", "yearly"}:
            return cls.ANNUAL
        return None

    @property
    def period_days(self) -> int:
        return 30 if self is BillingInterval.MONTHLY else 365


class SubscriptionStatus(str, Enum):
    """Lifecycle state mirrored from the billing provider."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"

    @property
    def is_active(self) -> bool:
        return self in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_placeholder_id(subscription_id: Optional[str]) -> bool:
    """Return ``True`` for locally synthesized subscription identifiers."""

    return bool(subscription_id) and str(subscription_id).startswith(PLACEHOLDER_PREFIX)


def is_customer_id(value: object) -> bool:
    return isinstance(value, str) and value.startswith(CUSTOMER_ID_PREFIX)


def object_id(value: object) -> Optional[str]:
    """Return the identifier of a provider reference that may be expanded."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    return str(value) or None


def metadata_of(payload: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    if not payload:
        return {}
    metadata = payload.get("metadata")
    if isinstance(metadata, Mapping):
        return {str(k): str(v) for k, v in metadata.items() if v is not None}
    return {}


def first_price(subscription: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the price attached to the first subscription item, if any."""

    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if not data:
        return {}
    price = data[0].get("price") or {}
    return dict(price) if isinstance(price, Mapping) else {}


def _period_bound(subscription: Mapping[str, Any], key: str) -> Optional[int]:
    # Newer provider API versions report billing periods on the subscription item.
    value = subscription.get(key)
    if value is None:
        items = subscription.get("items") or {}
        data = items.get("data") if isinstance(items, Mapping) else None
        if data:
            value = data[0].get(key)
    return int(value) if value is not None else None


def _epoch_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class Principal(BaseModel):
    """Authenticated application user."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionRecord(BaseModel):
    """Cached copy of a provider subscription stored under its owning principal."""

    id: str
    user_id: str = Field(alias="userId")
    plan_id: PlanKey = Field(alias="planId")
    customer_id: Optional[str] = Field(alias="customerId", default=None)
    status: SubscriptionStatus
    current_period_start: Optional[int] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[int] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)
    price_id: Optional[str] = Field(alias="priceId", default=None)
    interval: Optional[BillingInterval] = None
    event_created: Optional[int] = Field(alias="eventCreated", default=None)
    placeholder: bool = False
    created_at: datetime = Field(alias="createdAt", default_factory=utcnow)
    updated_at: datetime = Field(alias="updatedAt", default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_provider(
        cls,
        subscription: Mapping[str, Any],
        *,
        user_id: str,
        plan_id: PlanKey,
        now: datetime,
        event_created: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> "SubscriptionRecord":
        """Build a full snapshot record from a provider subscription object.

        ``created_at`` and ``updated_at`` are derived from provider timestamps when
        available so that replaying the same event produces an identical record.
        """

        price = first_price(subscription)
        recurring = price.get("recurring") or {}
        interval = BillingInterval.parse(recurring.get("interval")) or BillingInterval.parse(
            metadata_of(subscription).get(INTERVAL_METADATA_KEY)
        )
        created = created_at or _epoch_to_datetime(subscription.get("created")) or now
        updated = _epoch_to_datetime(event_created) or now
        return cls(
            id=str(subscription["id"]),
            user_id=user_id,
            plan_id=plan_id,
            customer_id=object_id(subscription.get("customer")),
            status=SubscriptionStatus(str(subscription.get("status") or SubscriptionStatus.INCOMPLETE.value)),
            current_period_start=_period_bound(subscription, "current_period_start"),
            current_period_end=_period_bound(subscription, "current_period_end"),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            price_id=price.get("id"),
            interval=interval,
            event_created=event_created,
            created_at=created,
            updated_at=updated,
        )

    @classmethod
    def placeholder_for(
        cls,
        *,
        user_id: str,
        customer_id: str,
        plan_id: PlanKey,
        price_id: str,
        interval: BillingInterval,
        now: datetime,
    ) -> "SubscriptionRecord":
        """Synthesize an active record for environments without webhook delivery."""

        started = int(now.timestamp())
        return cls(
            id=f"{PLACEHOLDER_PREFIX}{user_id[:8]}",
            user_id=user_id,
            plan_id=plan_id,
            customer_id=customer_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=started,
            current_period_end=started + int(timedelta(days=interval.period_days).total_seconds()),
            cancel_at_period_end=False,
            price_id=price_id,
            interval=interval,
            placeholder=True,
            created_at=now,
            updated_at=now,
        )

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the camelCase document layout used by the store."""

        document = self.model_dump(by_alias=True)
        document["planId"] = self.plan_id.value
        document["status"] = self.status.value
        document["interval"] = self.interval.value if self.interval else None
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "SubscriptionRecord":
        return cls.model_validate(dict(document))


class VerificationBadge(BaseModel):
    """Verification status attached directly to the principal record."""

    active: bool
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    price_id: Optional[str] = Field(alias="priceId", default=None)
    interval: Optional[str] = None
    current_period_end: Optional[str] = Field(alias="currentPeriodEnd", default=None)
    status: Optional[SubscriptionStatus] = None
    event_created: Optional[int] = Field(alias="eventCreated", default=None)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_provider(
        cls,
        subscription: Mapping[str, Any],
        *,
        status_override: Optional[SubscriptionStatus] = None,
        event_created: Optional[int] = None,
    ) -> "VerificationBadge":
        price = first_price(subscription)
        recurring = price.get("recurring") or {}
        status = status_override or SubscriptionStatus(
            str(subscription.get("status") or SubscriptionStatus.INCOMPLETE.value)
        )
        period_end = _epoch_to_datetime(_period_bound(subscription, "current_period_end"))
        return cls(
            active=status.is_active,
            subscription_id=object_id(subscription.get("id")),
            price_id=price.get("id"),
            interval=recurring.get("interval"),
            current_period_end=period_end.isoformat() if period_end else None,
            status=status,
            event_created=int(event_created) if event_created is not None else None,
        )

    def to_document(self) -> Dict[str, Any]:
        document = self.model_dump(by_alias=True)
        document["status"] = self.status.value if self.status else None
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "VerificationBadge":
        return cls.model_validate(dict(document))


class RealSubscription(BaseModel):
    """Live provider subscription returned by the info read path."""

    kind: Literal["real"] = "real"
    data: Dict[str, Any]

    model_config = ConfigDict(frozen=True)

    @property
    def id(self) -> str:
        return str(self.data.get("id"))

    @property
    def cancel_at_period_end(self) -> bool:
        return bool(self.data.get("cancel_at_period_end", False))

    def to_provider_shape(self) -> Dict[str, Any]:
        return dict(self.data)


class PlaceholderSubscription(BaseModel):
    """Locally fabricated stand-in with the provider's response shape."""

    kind: Literal["placeholder"] = "placeholder"
    id: str
    customer: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancel_at_period_end: bool = False
    current_period_end: int
    interval: BillingInterval = BillingInterval.MONTHLY

    model_config = ConfigDict(frozen=True)

    @classmethod
    def synthesize(
        cls,
        subscription_id: str,
        *,
        customer_id: Optional[str],
        now: datetime,
        record: Optional[SubscriptionRecord] = None,
    ) -> "PlaceholderSubscription":
        interval = (record.interval if record else None) or BillingInterval.MONTHLY
        period_end = record.current_period_end if record and record.current_period_end else None
        if period_end is None:
            period_end = int((now + timedelta(days=BillingInterval.MONTHLY.period_days)).timestamp())
        return cls(
            id=subscription_id,
            customer=customer_id,
            current_period_end=period_end,
            interval=interval,
        )

    def to_provider_shape(self) -> Dict[str, Any]:
        provider_interval = "month" if self.interval is BillingInterval.MONTHLY else "year"
        return {
            "id": self.id,
            "customer": self.customer,
            "status": self.status.value,
            "cancel_at_period_end": self.cancel_at_period_end,
            "current_period_end": self.current_period_end,
            "placeholder": True,
            "items": {
                "data": [
                    {
                        "price": {
                            "id": "price_placeholder",
                            "product": "prod_placeholder",
                            "recurring": {"interval": provider_interval},
                        }
                    }
                ]
            },
        }


LiveSubscription = Annotated[
    Union[RealSubscription, PlaceholderSubscription],
    Field(discriminator="kind"),
]


class SubscriptionInfo(BaseModel):
    """Aggregated live billing state for a customer or subscription."""

    subscription: Optional[LiveSubscription] = None
    subscriptions: List[Dict[str, Any]] = Field(default_factory=list)
    invoices: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def to_response(self) -> Dict[str, Any]:
        return {
            "subscription": self.subscription.to_provider_shape() if self.subscription else None,
            "subscriptions": list(self.subscriptions),
            "invoices": list(self.invoices),
        }


class CheckoutSession(BaseModel):
    """Return value of a checkout session creation request."""

    session_id: Optional[str] = None
    checkout_url: str
    customer_id: str
    placeholder_subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class WebhookOutcome(BaseModel):
    """Result of applying a single provider event."""

    event_id: Optional[str] = None
    event_type: Optional[str] = None
    handled: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CancellationResult(BaseModel):
    success: bool = True
    message: str

    model_config = ConfigDict(frozen=True)


class BackfillReport(BaseModel):
    """Counts produced by a customer link backfill run."""

    updated: int = 0
    skipped: int = 0

    model_config = ConfigDict(frozen=True)
