"""Core service coordinating checkout, customer links, and cancellations."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol, Sequence

from .catalog import PlanCatalog
from .exceptions import ForbiddenError, NotFoundError, UpstreamError, ValidationError
from .models import (
    INTERVAL_METADATA_KEY,
    PLAN_ID_METADATA_KEY,
    SUBSCRIPTION_ID_PREFIX,
    USER_ID_METADATA_KEY,
    BackfillReport,
    BillingInterval,
    CancellationResult,
    CheckoutSession,
    PlanKey,
    Principal,
    SubscriptionRecord,
    SubscriptionStatus,
    VerificationBadge,
    is_customer_id,
    is_placeholder_id,
    metadata_of,
    object_id,
    utcnow,
)

logger = logging.getLogger(__name__)

SUCCESS_PATH = "/dashboard/billing/success"
CANCEL_PATH = "/dashboard/billing/cancel"
PORTAL_RETURN_PATH = "/dashboard/billing"


class BillingProvider(Protocol):
    """External billing provider integration.

    Objects are exchanged as plain dictionaries shaped like the provider's
    JSON API responses.
    """

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Return the first customer registered under ``email``."""

    def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Mapping[str, str],
    ) -> Dict[str, Any]:
        ...

    def update_customer_metadata(self, customer_id: str, metadata: Mapping[str, str]) -> Dict[str, Any]:
        ...

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        ...

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        subscription_metadata: Mapping[str, str],
    ) -> Dict[str, Any]:
        """Create a subscription mode hosted checkout session."""

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        ...

    def retrieve_subscription(
        self,
        subscription_id: str,
        *,
        expand: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        ...

    def list_subscriptions(self, customer_id: str) -> Sequence[Dict[str, Any]]:
        """List every subscription of a customer regardless of status."""

    def list_invoices(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Sequence[Dict[str, Any]]:
        ...

    def update_subscription(self, subscription_id: str, *, cancel_at_period_end: bool) -> Dict[str, Any]:
        ...

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify a webhook signature and return the decoded event."""


class BillingRepository(Protocol):
    """Persistence operations required by the billing flows."""

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    def list_users(self) -> Iterable[Dict[str, Any]]:
        """Yield every principal record with its ``id`` included."""

    def set_customer_link(self, user_id: str, customer_id: str) -> None:
        ...

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        ...

    def get_subscription(self, user_id: str, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Replace the stored record with ``record``."""

    def update_subscription_fields(
        self,
        user_id: str,
        subscription_id: str,
        fields: Mapping[str, Any],
    ) -> bool:
        """Patch an existing record; return ``False`` when it does not exist."""

    def get_verification_badge(self, user_id: str) -> Optional[VerificationBadge]:
        ...

    def set_verification_badge(self, user_id: str, badge: VerificationBadge) -> None:
        ...

    def append_billing_history(self, user_id: str, subscription_id: str, invoice: Mapping[str, Any]) -> None:
        ...


class IdentityVerifier(Protocol):
    """Turns a bearer credential into an authenticated principal."""

    def verify(self, token: str) -> Principal:
        ...


@dataclass
class BillingService:
    """Coordinates customer binding, checkout, portal access, and cancellations."""

    repository: BillingRepository
    provider: BillingProvider
    catalog: PlanCatalog
    app_base_url: str
    placeholders_enabled: bool = False
    clock: Callable[[], datetime] = field(default=utcnow)

    def _url(self, path: str) -> str:
        return f"{self.app_base_url.rstrip('/')}{path}"

    def bind_customer(self, principal: Principal) -> str:
        """Return the provider customer for ``principal``, creating it if needed.

        Performs at most one provider metadata write per call.
        """

        binding = {USER_ID_METADATA_KEY: principal.id}
        user = self.repository.get_user(principal.id) or {}
        linked_id = user.get("stripeCustomerId")

        customer: Optional[Dict[str, Any]] = None
        if principal.email:
            customer = self.provider.find_customer_by_email(principal.email)
        elif is_customer_id(linked_id):
            customer = self.provider.retrieve_customer(linked_id)
            if customer.get("deleted"):
                customer = None

        metadata_written = False
        if customer is not None:
            if not metadata_of(customer).get(USER_ID_METADATA_KEY):
                self.provider.update_customer_metadata(customer["id"], binding)
                metadata_written = True
        else:
            customer = self.provider.create_customer(
                email=principal.email,
                name=principal.name,
                metadata=binding,
            )
            metadata_written = True

        customer_id = str(customer["id"])
        if linked_id != customer_id:
            self.repository.set_customer_link(principal.id, customer_id)
            logger.info("Linked user %s to customer %s", principal.id, customer_id)

        if not metadata_written:
            self.provider.update_customer_metadata(customer_id, binding)
        return customer_id

    def start_checkout(
        self,
        principal: Principal,
        plan_id: Optional[str],
        interval: Optional[str],
    ) -> CheckoutSession:
        if not plan_id or not interval:
            raise ValidationError(message="Missing required fields")
        try:
            plan_key = PlanKey(str(plan_id).strip().lower())
        except ValueError as exc:
            raise ValidationError(message="Invalid plan ID") from exc
        billing_interval = BillingInterval.parse(interval)
        if billing_interval is None:
            raise ValidationError(message="Invalid interval")
        try:
            price_id = self.catalog.price_for(plan_key, billing_interval)
        except KeyError as exc:
            raise ValidationError(message="Invalid interval") from exc

        customer_id = self.bind_customer(principal)
        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=self._url(SUCCESS_PATH),
            cancel_url=self._url(CANCEL_PATH),
            subscription_metadata={
                USER_ID_METADATA_KEY: principal.id,
                PLAN_ID_METADATA_KEY: plan_key.value,
                INTERVAL_METADATA_KEY: billing_interval.value,
            },
        )
        url = session.get("url")
        if not url:
            raise UpstreamError(message="Failed to create checkout session")

        placeholder_id = None
        if self.placeholders_enabled:
            placeholder_id = self._write_placeholder(
                principal,
                customer_id=customer_id,
                plan_key=plan_key,
                price_id=price_id,
                interval=billing_interval,
            )
        return CheckoutSession(
            session_id=session.get("id"),
            checkout_url=str(url),
            customer_id=customer_id,
            placeholder_subscription_id=placeholder_id,
        )

    def _write_placeholder(
        self,
        principal: Principal,
        *,
        customer_id: str,
        plan_key: PlanKey,
        price_id: str,
        interval: BillingInterval,
    ) -> Optional[str]:
        record = SubscriptionRecord.placeholder_for(
            user_id=principal.id,
            customer_id=customer_id,
            plan_id=plan_key,
            price_id=price_id,
            interval=interval,
            now=self.clock(),
        )
        try:
            self.repository.upsert_subscription(record)
        except Exception:
            logger.exception("Failed to write placeholder subscription for user %s", principal.id)
            return None
        logger.info("Wrote placeholder subscription %s for user %s", record.id, principal.id)
        return record.id

    def start_portal(self, principal: Principal) -> str:
        user = self.repository.get_user(principal.id) or {}
        customer_id = user.get("stripeCustomerId")
        if not is_customer_id(customer_id):
            raise NotFoundError(message="customer not found")
        session = self.provider.create_portal_session(
            customer_id=customer_id,
            return_url=self._url(PORTAL_RETURN_PATH),
        )
        url = session.get("url")
        if not url:
            raise UpstreamError(message="Failed to create billing portal session")
        return str(url)

    def _owned_subscription(self, principal: Principal, subscription_id: Optional[str]) -> Dict[str, Any]:
        if not subscription_id or not str(subscription_id).startswith(SUBSCRIPTION_ID_PREFIX):
            raise ValidationError(message="Invalid or missing subscription ID")
        if is_placeholder_id(subscription_id):
            raise ValidationError(message="Placeholder subscriptions cannot be modified")
        user = self.repository.get_user(principal.id) or {}
        customer_id = user.get("stripeCustomerId")
        if not is_customer_id(customer_id):
            raise ValidationError(message="Invalid or missing customer ID for this user")
        subscription = self.provider.retrieve_subscription(subscription_id)
        if object_id(subscription.get("customer")) != customer_id:
            raise ForbiddenError(message="Subscription does not belong to this user")
        return subscription

    def _mirror_cancel_flag(self, principal: Principal, subscription_id: str, flag: bool) -> None:
        try:
            updated = self.repository.update_subscription_fields(
                principal.id,
                subscription_id,
                {"cancelAtPeriodEnd": flag, "updatedAt": self.clock()},
            )
        except Exception:
            logger.exception("Failed to mirror cancel flag for subscription %s", subscription_id)
            return
        if not updated:
            logger.info("No stored record for subscription %s; cancel flag not mirrored", subscription_id)

    def cancel_at_period_end(self, principal: Principal, subscription_id: Optional[str]) -> CancellationResult:
        subscription = self._owned_subscription(principal, subscription_id)
        if subscription.get("cancel_at_period_end"):
            return CancellationResult(message="Subscription is already set to cancel at period end.")
        status_value = subscription.get("status")
        if status_value == SubscriptionStatus.CANCELED.value:
            return CancellationResult(message="Subscription is already canceled.")
        if status_value not in {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}:
            raise ValidationError(
                message=f"Cannot cancel subscription with status: {status_value}",
                detail={"status": status_value},
            )

        self.provider.update_subscription(subscription_id, cancel_at_period_end=True)
        self._mirror_cancel_flag(principal, subscription_id, True)
        logger.info("Subscription %s set to cancel at period end by user %s", subscription_id, principal.id)
        return CancellationResult(message="Subscription will be canceled at the end of the billing period.")

    def resume(self, principal: Principal, subscription_id: Optional[str]) -> CancellationResult:
        subscription = self._owned_subscription(principal, subscription_id)
        if not subscription.get("cancel_at_period_end"):
            return CancellationResult(message="Subscription is already active and not scheduled for cancellation")

        self.provider.update_subscription(subscription_id, cancel_at_period_end=False)
        self._mirror_cancel_flag(principal, subscription_id, False)
        logger.info("Subscription %s resumed by user %s", subscription_id, principal.id)
        return CancellationResult(message="Subscription resumed successfully")

    def backfill_customer_links(self) -> BackfillReport:
        """Link principals without a customer id to existing customers by email."""

        updated = 0
        skipped = 0
        for user in self.repository.list_users():
            user_id = user.get("id")
            email = user.get("email")
            if is_customer_id(user.get("stripeCustomerId")) or not email or not user_id:
                skipped += 1
                continue
            customer = self.provider.find_customer_by_email(email)
            if customer is None:
                logger.info("No customer found for user %s", user_id)
                skipped += 1
                continue
            self.repository.set_customer_link(user_id, str(customer["id"]))
            logger.info("Backfilled customer %s for user %s", customer["id"], user_id)
            updated += 1
        return BackfillReport(updated=updated, skipped=skipped)
