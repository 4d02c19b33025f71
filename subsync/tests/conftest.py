"""Shared fixtures wiring the billing components to in-memory fakes."""
from __future__ import annotations

import pytest

from subsync.app.billing import BillingService, SubscriptionInfoAggregator, WebhookProcessor, build_plan_catalog
from subsync.tests.fakes import FIXED_NOW, PRICE_IDS, FakeBillingProvider, InMemoryBillingRepository


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def catalog():
    return build_plan_catalog(PRICE_IDS)


@pytest.fixture
def service(repository, provider, catalog) -> BillingService:
    return BillingService(
        repository=repository,
        provider=provider,
        catalog=catalog,
        app_base_url="https://app.example.com",
        placeholders_enabled=False,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def processor(repository, provider, catalog) -> WebhookProcessor:
    return WebhookProcessor(repository=repository, provider=provider, catalog=catalog, clock=lambda: FIXED_NOW)


@pytest.fixture
def aggregator(repository, provider) -> SubscriptionInfoAggregator:
    return SubscriptionInfoAggregator(repository=repository, provider=provider, clock=lambda: FIXED_NOW)
