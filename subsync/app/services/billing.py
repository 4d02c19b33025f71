"""Application wiring for the billing service."""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence

import stripe
from firebase_admin import auth

from ..billing import (
    AuthenticationError,
    BillingConfig,
    BillingService,
    Principal,
    SubscriptionInfoAggregator,
    UpstreamError,
    WebhookProcessor,
    WebhookSignatureError,
    build_plan_catalog,
    load_billing_config,
)
from ..billing.catalog import PlanCatalog
from ..billing.repository import FirestoreBillingRepository
from ...app_context import ensure_admin_context, get_admin_app, get_firestore_client


logger = logging.getLogger("billing")

LIST_LIMIT = 100


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Flatten an SDK object into the plain JSON shape of the API response."""

    if obj is None:
        return {}
    if isinstance(obj, Mapping) and not isinstance(obj, stripe.StripeObject):
        return dict(obj)
    return json.loads(str(obj))


class StripeBillingProvider:
    """Billing provider backed by the Stripe SDK."""

    def __init__(self, *, api_key: str, webhook_secret: str, max_network_retries: int = 0) -> None:
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.set_app_info("subsync")
        self._webhook_secret = webhook_secret

    def _call(self, description: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc) or "Billing provider request failed"
            logger.error("Stripe %s failed: %s", description, message)
            raise UpstreamError(message=message) from exc

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        result = self._call("customer search", stripe.Customer.list, email=email, limit=1)
        customers = [_to_dict(customer) for customer in result.data]
        return customers[0] if customers else None

    def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: Mapping[str, str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": dict(metadata)}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        return _to_dict(self._call("customer create", stripe.Customer.create, **params))

    def update_customer_metadata(self, customer_id: str, metadata: Mapping[str, str]) -> Dict[str, Any]:
        return _to_dict(
            self._call("customer update", stripe.Customer.modify, customer_id, metadata=dict(metadata))
        )

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return _to_dict(self._call("customer retrieve", stripe.Customer.retrieve, customer_id))

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        subscription_metadata: Mapping[str, str],
    ) -> Dict[str, Any]:
        session = self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            subscription_data={"metadata": dict(subscription_metadata)},
        )
        return _to_dict(session)

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        session = self._call(
            "portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _to_dict(session)

    def retrieve_subscription(
        self,
        subscription_id: str,
        *,
        expand: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"expand": list(expand)} if expand else {}
        return _to_dict(self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id, **params))

    def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        result = self._call(
            "subscription list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=LIST_LIMIT,
            expand=["data.latest_invoice"],
        )
        return [_to_dict(subscription) for subscription in result.data]

    def list_invoices(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": LIST_LIMIT}
        if customer_id:
            params["customer"] = customer_id
        elif subscription_id:
            params["subscription"] = subscription_id
        result = self._call("invoice list", stripe.Invoice.list, **params)
        return [_to_dict(invoice) for invoice in result.data]

    def update_subscription(self, subscription_id: str, *, cancel_at_period_end: bool) -> Dict[str, Any]:
        subscription = self._call(
            "subscription update",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        return _to_dict(subscription)

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected webhook with invalid signature")
            raise WebhookSignatureError(message="Webhook signature verification failed") from exc
        except ValueError as exc:
            raise WebhookSignatureError(code="invalid_payload", message="Invalid webhook payload") from exc
        return _to_dict(event)


class FirebaseIdentityVerifier:
    """Verifies bearer ID tokens with the admin SDK."""

    def verify(self, token: str) -> Principal:
        try:
            decoded = auth.verify_id_token(token, app=get_admin_app())
        except (auth.InvalidIdTokenError, auth.UserDisabledError, ValueError) as exc:
            raise AuthenticationError(message="Invalid or expired auth token") from exc
        except auth.CertificateFetchError as exc:
            raise UpstreamError(message="Unable to verify auth token") from exc
        return Principal(id=decoded["uid"], email=decoded.get("email"), name=decoded.get("name"))


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    return build_plan_catalog(get_billing_config().price_ids)


@lru_cache(maxsize=1)
def get_billing_provider() -> StripeBillingProvider:
    config = get_billing_config()
    return StripeBillingProvider(
        api_key=config.stripe_secret_key,
        webhook_secret=config.stripe_webhook_secret,
        max_network_retries=config.stripe_max_network_retries,
    )


@lru_cache(maxsize=1)
def get_billing_repository() -> FirestoreBillingRepository:
    ensure_admin_context(get_billing_config().admin)
    return FirestoreBillingRepository(get_firestore_client)


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    return BillingService(
        repository=get_billing_repository(),
        provider=get_billing_provider(),
        catalog=get_plan_catalog(),
        app_base_url=config.app_base_url,
        placeholders_enabled=config.placeholders_enabled,
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(
        repository=get_billing_repository(),
        provider=get_billing_provider(),
        catalog=get_plan_catalog(),
    )


@lru_cache(maxsize=1)
def get_subscription_info_aggregator() -> SubscriptionInfoAggregator:
    return SubscriptionInfoAggregator(
        repository=get_billing_repository(),
        provider=get_billing_provider(),
    )


@lru_cache(maxsize=1)
def get_identity_verifier() -> FirebaseIdentityVerifier:
    ensure_admin_context(get_billing_config().admin)
    return FirebaseIdentityVerifier()
