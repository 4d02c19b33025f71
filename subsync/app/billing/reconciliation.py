"""Live subscription read path with cancel flag drift repair."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from .exceptions import NotFoundError, ValidationError
from .models import (
    USER_ID_METADATA_KEY,
    PlaceholderSubscription,
    RealSubscription,
    SubscriptionInfo,
    is_placeholder_id,
    metadata_of,
    object_id,
    utcnow,
)
from .service import BillingProvider, BillingRepository

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPAND = ("latest_invoice", "customer")


@dataclass
class SubscriptionInfoAggregator:
    """Reads live provider state and heals the cached cancel flag."""

    repository: BillingRepository
    provider: BillingProvider
    clock: Callable[[], datetime] = field(default=utcnow)

    def get_info(
        self,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> SubscriptionInfo:
        if not customer_id and not subscription_id:
            raise ValidationError(message="Missing customerId or subscriptionId")

        if subscription_id and is_placeholder_id(subscription_id):
            return self._placeholder_info(subscription_id, customer_id)

        subscriptions: List[Dict[str, Any]] = []
        if subscription_id:
            subscription: Optional[Dict[str, Any]] = self.provider.retrieve_subscription(
                subscription_id,
                expand=list(SUBSCRIPTION_EXPAND),
            )
        else:
            subscriptions = list(self.provider.list_subscriptions(customer_id))
            subscription = subscriptions[0] if subscriptions else None

        if subscription is not None:
            self._repair_cancel_flag(subscription)

        return SubscriptionInfo(
            subscription=RealSubscription(data=subscription) if subscription is not None else None,
            subscriptions=subscriptions,
            invoices=self._invoices(customer_id, subscription),
        )

    def _placeholder_info(self, subscription_id: str, customer_id: Optional[str]) -> SubscriptionInfo:
        user_id = self._user_for_customer(customer_id) if customer_id else None
        if not user_id:
            raise NotFoundError(message="Placeholder subscription not found")

        record = self.repository.get_subscription(user_id, subscription_id)
        placeholder = PlaceholderSubscription.synthesize(
            subscription_id,
            customer_id=customer_id,
            now=self.clock(),
            record=record,
        )
        return SubscriptionInfo(subscription=placeholder)

    def _user_for_customer(self, customer_ref: object) -> Optional[str]:
        customer_id = object_id(customer_ref)
        if not customer_id:
            return None
        user_id = self.repository.find_user_by_customer(customer_id)
        if user_id:
            return user_id
        if isinstance(customer_ref, Mapping):
            return metadata_of(customer_ref).get(USER_ID_METADATA_KEY)
        customer = self.provider.retrieve_customer(customer_id)
        return metadata_of(customer).get(USER_ID_METADATA_KEY)

    def _invoices(self, customer_id: Optional[str], subscription: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        try:
            if customer_id:
                return list(self.provider.list_invoices(customer_id=customer_id))
            if subscription is not None:
                return list(self.provider.list_invoices(subscription_id=str(subscription["id"])))
        except Exception:
            logger.warning("Failed to list invoices customer=%s", customer_id, exc_info=True)
        return []

    def _repair_cancel_flag(self, subscription: Mapping[str, Any]) -> None:
        subscription_id = str(subscription.get("id"))
        provider_flag = bool(subscription.get("cancel_at_period_end", False))
        try:
            user_id = self._user_for_customer(subscription.get("customer"))
            if not user_id:
                return
            record = self.repository.get_subscription(user_id, subscription_id)
            if record is None or record.cancel_at_period_end == provider_flag:
                return
            self.repository.update_subscription_fields(
                user_id,
                subscription_id,
                {"cancelAtPeriodEnd": provider_flag, "updatedAt": self.clock()},
            )
            logger.info(
                "Repaired cancel flag drift for subscription %s cancelAtPeriodEnd=%s",
                subscription_id,
                provider_flag,
            )
        except Exception:
            logger.exception("Cancel flag repair failed for subscription %s", subscription_id)
