"""Authentication and application of billing provider webhook events."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .catalog import PlanCatalog
from .exceptions import ValidationError, WebhookSignatureError
from .models import (
    PLAN_ID_METADATA_KEY,
    USER_ID_METADATA_KEY,
    PlanKey,
    SubscriptionRecord,
    SubscriptionStatus,
    VerificationBadge,
    WebhookOutcome,
    first_price,
    metadata_of,
    object_id,
    utcnow,
)
from .service import BillingProvider, BillingRepository

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class EventFailure(Exception):
    """Raised inside a handler when an event cannot be applied."""


class _StaleEvent(Exception):
    pass


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest the subscription under the invoice parent.
    parent = invoice.get("parent") or {}
    if not isinstance(parent, Mapping):
        return None
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


@dataclass
class WebhookProcessor:
    """Verifies provider events and mirrors their effects into the store.

    Authenticated events are always acknowledged. A failing handler is logged
    and reported through :class:`WebhookOutcome` rather than raised, because a
    non-2xx answer would make the provider redeliver the whole event.
    """

    repository: BillingRepository
    provider: BillingProvider
    catalog: PlanCatalog
    clock: Callable[[], datetime] = field(default=utcnow)

    def handle_event(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        if not signature_header:
            raise WebhookSignatureError(message="Missing Stripe-Signature header")
        event = self.provider.construct_event(raw_body, signature_header)
        return self.apply_event(event)

    def apply_event(self, event: Mapping[str, Any]) -> WebhookOutcome:
        event_type = event.get("type")
        data = event.get("data")
        payload = data.get("object") if isinstance(data, Mapping) else None
        if not event_type or not isinstance(payload, Mapping):
            raise ValidationError(message="Malformed webhook event")

        event_id = event.get("id")
        handler = self._handlers().get(event_type)
        if handler is None:
            logger.debug("Ignoring webhook event %s of type %s", event_id, event_type)
            return WebhookOutcome(event_id=event_id, event_type=event_type, handled=False)

        try:
            handler(payload, event.get("created"))
        except Exception as exc:
            logger.exception(
                "Webhook event %s of type %s failed",
                event_id,
                event_type,
                extra={"event_id": event_id, "event_type": event_type},
            )
            return WebhookOutcome(event_id=event_id, event_type=event_type, handled=False, error=str(exc))
        return WebhookOutcome(event_id=event_id, event_type=event_type, handled=True)

    def _handlers(self) -> Dict[str, Callable[[Mapping[str, Any], Optional[int]], None]]:
        return {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            SUBSCRIPTION_CREATED: self._handle_subscription_changed,
            SUBSCRIPTION_UPDATED: self._handle_subscription_changed,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            INVOICE_PAYMENT_FAILED: self._handle_payment_failed,
        }

    def _customer_user_id(self, customer_ref: object) -> Optional[str]:
        customer_id = object_id(customer_ref)
        if not customer_id:
            return None
        if isinstance(customer_ref, Mapping) and metadata_of(customer_ref).get(USER_ID_METADATA_KEY):
            return metadata_of(customer_ref)[USER_ID_METADATA_KEY]
        try:
            customer = self.provider.retrieve_customer(customer_id)
        except Exception:
            logger.warning("Could not retrieve customer %s for user lookup", customer_id, exc_info=True)
            return None
        return metadata_of(customer).get(USER_ID_METADATA_KEY)

    def _resolve_plan(self, subscription: Mapping[str, Any], *fallback_metadata: Mapping[str, str]) -> PlanKey:
        explicit = metadata_of(subscription).get(PLAN_ID_METADATA_KEY)
        for metadata in fallback_metadata:
            explicit = explicit or metadata.get(PLAN_ID_METADATA_KEY)
        return self.catalog.resolve_plan(price_id=first_price(subscription).get("id"), explicit_plan_id=explicit)

    def _load_unless_stale(
        self,
        user_id: str,
        subscription_id: str,
        event_created: Optional[int],
    ) -> Optional[SubscriptionRecord]:
        """Return the stored record, raising ``_StaleEvent`` when the event predates it."""

        existing = self.repository.get_subscription(user_id, subscription_id)
        if (
            existing is not None
            and event_created is not None
            and existing.event_created is not None
            and int(event_created) < existing.event_created
        ):
            raise _StaleEvent(subscription_id)
        return existing

    def _store_badge(
        self,
        subscription: Mapping[str, Any],
        *,
        user_id: str,
        event_created: Optional[int],
        status_override: Optional[SubscriptionStatus] = None,
    ) -> None:
        existing = self.repository.get_verification_badge(user_id)
        if (
            existing is not None
            and event_created is not None
            and existing.event_created is not None
            and int(event_created) < existing.event_created
        ):
            logger.info("Skipping stale verification event for user %s", user_id)
            return

        badge = VerificationBadge.from_provider(
            subscription,
            status_override=status_override,
            event_created=event_created,
        )
        self.repository.set_verification_badge(user_id, badge)
        logger.info("Updated verification badge for user %s active=%s", user_id, badge.active)

    def _store_subscription(
        self,
        subscription: Mapping[str, Any],
        *,
        user_id: str,
        plan_id: PlanKey,
        event_created: Optional[int],
    ) -> None:
        if plan_id is PlanKey.VERIFICATION:
            self._store_badge(subscription, user_id=user_id, event_created=event_created)
            return

        subscription_id = str(subscription["id"])
        try:
            existing = self._load_unless_stale(user_id, subscription_id, event_created)
        except _StaleEvent:
            logger.info("Skipping stale event for subscription %s", subscription_id)
            return
        record = SubscriptionRecord.from_provider(
            subscription,
            user_id=user_id,
            plan_id=plan_id,
            now=self.clock(),
            event_created=event_created,
            created_at=existing.created_at if existing else None,
        )
        self.repository.upsert_subscription(record)
        logger.info(
            "Stored subscription %s for user %s plan=%s status=%s",
            record.id,
            user_id,
            record.plan_id.value,
            record.status.value,
        )

    def _handle_checkout_completed(self, session: Mapping[str, Any], event_created: Optional[int]) -> None:
        subscription_id = object_id(session.get("subscription"))
        if not subscription_id:
            raise EventFailure("No subscription ID in checkout session")

        subscription = self.provider.retrieve_subscription(subscription_id)
        session_metadata = metadata_of(session)
        user_id = (
            metadata_of(subscription).get(USER_ID_METADATA_KEY)
            or session_metadata.get(USER_ID_METADATA_KEY)
            or self._customer_user_id(subscription.get("customer"))
        )
        if not user_id:
            raise EventFailure(f"No userId found for subscription {subscription_id}")

        plan_id = self._resolve_plan(subscription, session_metadata)
        self._store_subscription(subscription, user_id=user_id, plan_id=plan_id, event_created=event_created)

    def _handle_subscription_changed(self, subscription: Mapping[str, Any], event_created: Optional[int]) -> None:
        user_id = metadata_of(subscription).get(USER_ID_METADATA_KEY) or self._customer_user_id(
            subscription.get("customer")
        )
        if not user_id:
            raise EventFailure(f"No userId found for subscription {subscription.get('id')}")

        plan_id = self._resolve_plan(subscription)
        self._store_subscription(subscription, user_id=user_id, plan_id=plan_id, event_created=event_created)

    def _handle_subscription_deleted(self, subscription: Mapping[str, Any], event_created: Optional[int]) -> None:
        subscription_id = str(subscription.get("id"))
        user_id = metadata_of(subscription).get(USER_ID_METADATA_KEY) or self._customer_user_id(
            subscription.get("customer")
        )
        if not user_id:
            logger.warning("Dropping deletion of subscription %s: no userId found", subscription_id)
            return

        plan_id = self._resolve_plan(subscription)
        if plan_id is PlanKey.VERIFICATION:
            self._store_badge(
                subscription,
                user_id=user_id,
                event_created=event_created,
                status_override=SubscriptionStatus.CANCELED,
            )
            return

        try:
            existing = self._load_unless_stale(user_id, subscription_id, event_created)
        except _StaleEvent:
            logger.info("Skipping stale deletion for subscription %s", subscription_id)
            return

        if existing is None:
            record = SubscriptionRecord.from_provider(
                {**subscription, "status": SubscriptionStatus.CANCELED.value, "cancel_at_period_end": False},
                user_id=user_id,
                plan_id=plan_id,
                now=self.clock(),
                event_created=event_created,
            )
            self.repository.upsert_subscription(record)
        else:
            fields: Dict[str, Any] = {
                "status": SubscriptionStatus.CANCELED.value,
                "cancelAtPeriodEnd": False,
                "updatedAt": self.clock(),
            }
            if event_created is not None:
                fields["eventCreated"] = int(event_created)
            self.repository.update_subscription_fields(user_id, subscription_id, fields)
        logger.info("Marked subscription %s canceled for user %s", subscription_id, user_id)

    def _handle_payment_succeeded(self, invoice: Mapping[str, Any], event_created: Optional[int]) -> None:
        subscription_id = invoice_subscription_id(invoice)
        customer_id = object_id(invoice.get("customer"))
        user_id = self._customer_user_id(invoice.get("customer"))
        if not user_id and customer_id:
            user_id = self.repository.find_user_by_customer(customer_id)
        if not user_id or not subscription_id:
            logger.warning(
                "Dropping invoice %s: user=%s subscription=%s",
                invoice.get("id"),
                user_id,
                subscription_id,
            )
            return
        self.repository.append_billing_history(user_id, subscription_id, invoice)
        logger.info("Recorded invoice %s for subscription %s", invoice.get("id"), subscription_id)

    def _handle_payment_failed(self, invoice: Mapping[str, Any], event_created: Optional[int]) -> None:
        logger.warning(
            "Payment failed for subscription %s customer=%s invoice=%s",
            invoice_subscription_id(invoice),
            object_id(invoice.get("customer")),
            invoice.get("id"),
        )

