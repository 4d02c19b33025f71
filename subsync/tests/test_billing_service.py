"""Tests for customer binding, checkout, portal, cancellation, and backfill flows."""
from __future__ import annotations

import pytest

from subsync.app.billing import (
    BillingInterval,
    ForbiddenError,
    NotFoundError,
    PlanKey,
    Principal,
    SubscriptionStatus,
    UpstreamError,
    ValidationError,
)
from subsync.app.billing.models import SubscriptionRecord
from subsync.tests.fakes import FIXED_NOW, make_subscription


PRINCIPAL = Principal(id="u1", email="a@b.com", name="Ada")


def test_checkout_creates_customer_and_returns_url_without_placeholder(service, repository, provider):
    session = service.start_checkout(PRINCIPAL, "pro", "month")

    assert session.checkout_url == "https://checkout.stripe.test/cs_test_1"
    assert provider.provider_calls("create_customer") == [{"userId": "u1"}]
    assert repository.users["u1"]["stripeCustomerId"] == session.customer_id
    assert session.placeholder_subscription_id is None
    assert repository.subscriptions == {}

    params = provider.checkout_sessions[0]
    assert params["price_id"] == "price_pro_monthly"
    assert params["success_url"] == "https://app.example.com/dashboard/billing/success"
    assert params["cancel_url"] == "https://app.example.com/dashboard/billing/cancel"
    assert params["subscription_metadata"] == {"userId": "u1", "planId": "pro", "interval": "monthly"}


def test_checkout_binding_writes_customer_metadata_once(service, provider):
    service.start_checkout(PRINCIPAL, "pro", "month")

    assert provider.metadata_writes() == 1


def test_existing_customer_without_metadata_is_patched_once(service, repository, provider):
    provider.add_customer("cus_existing", email="a@b.com")

    customer_id = service.bind_customer(PRINCIPAL)

    assert customer_id == "cus_existing"
    assert provider.customers["cus_existing"]["metadata"] == {"userId": "u1"}
    assert provider.metadata_writes() == 1
    assert repository.users["u1"]["stripeCustomerId"] == "cus_existing"


def test_existing_bound_customer_is_reasserted_without_relinking(service, repository, provider):
    provider.add_customer("cus_existing", email="a@b.com", metadata={"userId": "u1"})
    repository.users["u1"] = {"stripeCustomerId": "cus_existing"}

    service.bind_customer(PRINCIPAL)

    assert provider.provider_calls("update_customer_metadata") == ["cus_existing"]
    assert "customer_link" not in repository.writes


def test_stale_customer_link_is_replaced(service, repository, provider):
    provider.add_customer("cus_new", email="a@b.com", metadata={"userId": "u1"})
    repository.users["u1"] = {"stripeCustomerId": "cus_old"}

    service.bind_customer(PRINCIPAL)

    assert repository.users["u1"]["stripeCustomerId"] == "cus_new"


def test_principal_without_email_reuses_linked_customer(service, repository, provider):
    principal = Principal(id="u1", email=None)

    first = service.bind_customer(principal)
    second = service.bind_customer(principal)

    assert first == second == "cus_0001"
    assert list(provider.customers) == ["cus_0001"]
    assert provider.provider_calls("retrieve_customer") == ["cus_0001"]
    assert repository.users["u1"]["stripeCustomerId"] == "cus_0001"


def test_principal_without_email_replaces_deleted_customer(service, repository, provider):
    provider.add_customer("cus_gone", metadata={"userId": "u1"})["deleted"] = True
    repository.users["u1"] = {"stripeCustomerId": "cus_gone"}

    customer_id = service.bind_customer(Principal(id="u1", email=None))

    assert customer_id != "cus_gone"
    assert repository.users["u1"]["stripeCustomerId"] == customer_id


def test_checkout_writes_placeholder_outside_production(service, repository):
    service.placeholders_enabled = True

    session = service.start_checkout(PRINCIPAL, "business", "year")

    assert session.placeholder_subscription_id == "sub_placeholder_u1"
    record = repository.subscriptions[("u1", "sub_placeholder_u1")]
    assert record.placeholder is True
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.plan_id == PlanKey.BUSINESS
    assert record.interval == BillingInterval.ANNUAL
    assert record.current_period_end - record.current_period_start == 365 * 24 * 60 * 60


def test_placeholder_id_uses_first_eight_characters_of_user_id(service, repository):
    service.placeholders_enabled = True
    principal = Principal(id="abcdefghijklmnop", email="long@b.com")

    session = service.start_checkout(principal, "basic", "monthly")

    assert session.placeholder_subscription_id == "sub_placeholder_abcdefgh"
    record = repository.subscriptions[("abcdefghijklmnop", "sub_placeholder_abcdefgh")]
    assert record.current_period_end - record.current_period_start == 30 * 24 * 60 * 60


def test_placeholder_write_failure_does_not_fail_checkout(service, repository):
    service.placeholders_enabled = True
    repository.fail_subscription_writes = True

    session = service.start_checkout(PRINCIPAL, "pro", "month")

    assert session.checkout_url
    assert session.placeholder_subscription_id is None


@pytest.mark.parametrize(
    "plan_id, interval",
    [
        (None, "month"),
        ("pro", None),
        ("platinum", "month"),
        ("pro", "weekly"),
    ],
)
def test_checkout_rejects_invalid_input(service, provider, plan_id, interval):
    with pytest.raises(ValidationError):
        service.start_checkout(PRINCIPAL, plan_id, interval)

    assert provider.calls == []


def test_checkout_without_session_url_is_upstream_error(service, provider):
    provider.checkout_url = None

    with pytest.raises(UpstreamError):
        service.start_checkout(PRINCIPAL, "pro", "month")


def test_portal_requires_customer_link(service, repository, provider):
    with pytest.raises(NotFoundError):
        service.start_portal(PRINCIPAL)

    repository.users["u1"] = {"stripeCustomerId": "not-a-customer"}
    with pytest.raises(NotFoundError):
        service.start_portal(PRINCIPAL)

    assert provider.provider_calls("create_portal_session") == []


def test_portal_returns_provider_url(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}

    url = service.start_portal(PRINCIPAL)

    assert url == "https://billing.stripe.test/cus_0001"
    assert provider.provider_calls("create_portal_session") == [
        ("cus_0001", "https://app.example.com/dashboard/billing")
    ]


def _stored_record(repository, subscription, *, cancel_at_period_end=False):
    record = SubscriptionRecord.from_provider(
        {**subscription, "cancel_at_period_end": cancel_at_period_end},
        user_id="u1",
        plan_id=PlanKey.PRO,
        now=FIXED_NOW,
    )
    repository.upsert_subscription(record)
    return record


def test_cancel_sets_flag_at_provider_and_mirrors_store(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    subscription = provider.add_subscription(make_subscription())
    _stored_record(repository, subscription)

    result = service.cancel_at_period_end(PRINCIPAL, "sub_123")

    assert result.success is True
    assert provider.provider_calls("update_subscription") == [("sub_123", True)]
    assert repository.subscriptions[("u1", "sub_123")].cancel_at_period_end is True


def test_cancel_is_noop_when_already_flagged(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    provider.add_subscription(make_subscription(cancel_at_period_end=True))

    result = service.cancel_at_period_end(PRINCIPAL, "sub_123")

    assert result.message == "Subscription is already set to cancel at period end."
    assert provider.provider_calls("update_subscription") == []


def test_cancel_is_noop_when_already_canceled(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    provider.add_subscription(make_subscription(status="canceled"))

    result = service.cancel_at_period_end(PRINCIPAL, "sub_123")

    assert result.message == "Subscription is already canceled."
    assert provider.provider_calls("update_subscription") == []


def test_cancel_rejects_non_cancellable_status(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    provider.add_subscription(make_subscription(status="past_due"))

    with pytest.raises(ValidationError) as excinfo:
        service.cancel_at_period_end(PRINCIPAL, "sub_123")

    assert excinfo.value.payload["status"] == "past_due"


def test_cancel_rejects_foreign_subscription(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    provider.add_subscription(make_subscription(customer="cus_other"))

    with pytest.raises(ForbiddenError):
        service.cancel_at_period_end(PRINCIPAL, "sub_123")

    assert provider.provider_calls("update_subscription") == []


def test_cancel_validates_ids(service, repository):
    with pytest.raises(ValidationError):
        service.cancel_at_period_end(PRINCIPAL, "in_123")

    with pytest.raises(ValidationError):
        service.cancel_at_period_end(PRINCIPAL, "sub_123")


@pytest.mark.parametrize("action", ["cancel_at_period_end", "resume"])
def test_placeholder_subscriptions_are_never_sent_to_provider(service, repository, provider, action):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}

    with pytest.raises(ValidationError) as excinfo:
        getattr(service, action)(PRINCIPAL, "sub_placeholder_u1")

    assert excinfo.value.message == "Placeholder subscriptions cannot be modified"
    assert provider.calls == []


def test_cancel_store_failure_is_not_fatal(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    provider.add_subscription(make_subscription())
    repository.fail_subscription_writes = True

    result = service.cancel_at_period_end(PRINCIPAL, "sub_123")

    assert result.success is True
    assert provider.subscriptions["sub_123"]["cancel_at_period_end"] is True


def test_resume_clears_flag(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    subscription = provider.add_subscription(make_subscription(cancel_at_period_end=True))
    _stored_record(repository, subscription, cancel_at_period_end=True)

    result = service.resume(PRINCIPAL, "sub_123")

    assert result.success is True
    assert provider.provider_calls("update_subscription") == [("sub_123", False)]
    assert repository.subscriptions[("u1", "sub_123")].cancel_at_period_end is False


def test_resume_is_noop_when_not_flagged(service, repository, provider):
    repository.users["u1"] = {"stripeCustomerId": "cus_0001"}
    provider.add_subscription(make_subscription())

    result = service.resume(PRINCIPAL, "sub_123")

    assert result.success is True
    assert provider.provider_calls("update_subscription") == []


def test_backfill_links_users_with_matching_customers(service, repository, provider):
    provider.add_customer("cus_a", email="a@b.com")
    repository.users = {
        "u1": {"email": "a@b.com"},
        "u2": {"email": "nobody@b.com"},
        "u3": {"email": "c@b.com", "stripeCustomerId": "cus_c"},
        "u4": {},
    }

    report = service.backfill_customer_links()

    assert report.updated == 1
    assert report.skipped == 3
    assert repository.users["u1"]["stripeCustomerId"] == "cus_a"
    assert "stripeCustomerId" not in repository.users["u2"]
