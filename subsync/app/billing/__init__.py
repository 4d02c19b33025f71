"""Billing domain package mirroring provider subscriptions into the document store."""

from .catalog import DEFAULT_PLAN, PlanCatalog, PlanDefinition, build_plan_catalog
from .config import BillingConfig, load_billing_config
from .exceptions import (
    AuthenticationError,
    BillingError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
    ValidationError,
    WebhookSignatureError,
)
from .models import (
    BackfillReport,
    BillingInterval,
    CancellationResult,
    CheckoutSession,
    PlaceholderSubscription,
    PlanKey,
    Principal,
    RealSubscription,
    SubscriptionInfo,
    SubscriptionRecord,
    SubscriptionStatus,
    VerificationBadge,
    WebhookOutcome,
    is_placeholder_id,
)
from .reconciliation import SubscriptionInfoAggregator
from .service import BillingProvider, BillingRepository, BillingService, IdentityVerifier
from .webhooks import WebhookProcessor

__all__ = [
    "AuthenticationError",
    "BackfillReport",
    "BillingConfig",
    "BillingError",
    "BillingInterval",
    "BillingProvider",
    "BillingRepository",
    "BillingService",
    "CancellationResult",
    "CheckoutSession",
    "DEFAULT_PLAN",
    "ForbiddenError",
    "IdentityVerifier",
    "NotFoundError",
    "PlaceholderSubscription",
    "PlanCatalog",
    "PlanDefinition",
    "PlanKey",
    "Principal",
    "RealSubscription",
    "SubscriptionInfo",
    "SubscriptionInfoAggregator",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "UpstreamError",
    "ValidationError",
    "VerificationBadge",
    "WebhookOutcome",
    "WebhookProcessor",
    "WebhookSignatureError",
    "build_plan_catalog",
    "is_placeholder_id",
    "load_billing_config",
]
