"""Persistence layer for billing state kept in the document store."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from google.api_core.exceptions import NotFound
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from .models import SubscriptionRecord, VerificationBadge

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"
SUBSCRIPTIONS_COLLECTION = "subscriptions"
BILLING_HISTORY_COLLECTION = "billingHistory"
CUSTOMER_LINK_FIELD = "stripeCustomerId"
VERIFICATION_BADGE_FIELD = "verificationBadge"


class FirestoreBillingRepository:
    """Stores customer links and subscription mirrors under ``users/{uid}``."""

    def __init__(self, client_factory: Callable[[], firestore.Client]) -> None:
        self._client_factory = client_factory
        self._db: Optional[firestore.Client] = None

    @property
    def db(self) -> firestore.Client:
        if self._db is None:
            self._db = self._client_factory()
        return self._db

    def _user_ref(self, user_id: str) -> firestore.DocumentReference:
        return self.db.collection(USERS_COLLECTION).document(user_id)

    def _subscription_ref(self, user_id: str, subscription_id: str) -> firestore.DocumentReference:
        return self._user_ref(user_id).collection(SUBSCRIPTIONS_COLLECTION).document(subscription_id)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._user_ref(user_id).get()
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    def list_users(self) -> Iterable[Dict[str, Any]]:
        for snapshot in self.db.collection(USERS_COLLECTION).stream():
            yield {**(snapshot.to_dict() or {}), "id": snapshot.id}

    def set_customer_link(self, user_id: str, customer_id: str) -> None:
        self._user_ref(user_id).set(
            {CUSTOMER_LINK_FIELD: customer_id, "updatedAt": firestore.SERVER_TIMESTAMP},
            merge=True,
        )

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        query = (
            self.db.collection(USERS_COLLECTION)
            .where(filter=FieldFilter(CUSTOMER_LINK_FIELD, "==", customer_id))
            .limit(1)
        )
        for snapshot in query.stream():
            return snapshot.id
        return None

    def get_subscription(self, user_id: str, subscription_id: str) -> Optional[SubscriptionRecord]:
        snapshot = self._subscription_ref(user_id, subscription_id).get()
        if not snapshot.exists:
            return None
        return SubscriptionRecord.from_document(snapshot.to_dict() or {})

    def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        self._subscription_ref(record.user_id, record.id).set(record.to_document())
        return record

    def update_subscription_fields(
        self,
        user_id: str,
        subscription_id: str,
        fields: Mapping[str, Any],
    ) -> bool:
        try:
            self._subscription_ref(user_id, subscription_id).update(dict(fields))
        except NotFound:
            logger.debug("Subscription %s for user %s does not exist", subscription_id, user_id)
            return False
        return True

    def get_verification_badge(self, user_id: str) -> Optional[VerificationBadge]:
        user = self.get_user(user_id) or {}
        document = user.get(VERIFICATION_BADGE_FIELD)
        if not document:
            return None
        return VerificationBadge.from_document(document)

    def set_verification_badge(self, user_id: str, badge: VerificationBadge) -> None:
        self._user_ref(user_id).set({VERIFICATION_BADGE_FIELD: badge.to_document()}, merge=True)

    def append_billing_history(self, user_id: str, subscription_id: str, invoice: Mapping[str, Any]) -> None:
        history = self._subscription_ref(user_id, subscription_id).collection(BILLING_HISTORY_COLLECTION)
        history.add(dict(invoice))
