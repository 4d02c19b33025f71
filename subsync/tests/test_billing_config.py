"""Tests for environment driven billing configuration."""
from __future__ import annotations

import json

import pytest

from subsync.app.billing import BillingInterval, PlanKey, load_billing_config
from subsync.app.billing.config import cors_allows_credentials, parse_cors_origins


def _env(**overrides):
    env = {
        "STRIPE_SECRET_KEY": "sk_test_123",
        "STRIPE_WEBHOOK_SECRET": "whsec_123",
    }
    for plan in PlanKey:
        for interval in BillingInterval:
            env[f"STRIPE_PRICE_{plan.value.upper()}_{interval.value.upper()}"] = f"price_{plan.value}_{interval.value}"
    env.update(overrides)
    return env


def test_loads_defaults():
    config = load_billing_config(_env())

    assert config.app_base_url == "http://localhost:3000"
    assert config.environment == "development"
    assert config.placeholders_enabled is True
    assert config.stripe_max_network_retries == 0
    assert config.price_ids[PlanKey.VERIFICATION][BillingInterval.ANNUAL] == "price_verification_annual"
    assert [source.name for source in config.admin.credential_sources] == ["application_default"]


def test_production_disables_placeholders_and_trims_base_url():
    config = load_billing_config(
        _env(APP_ENV="Production", APP_BASE_URL="https://example.com/", STRIPE_MAX_NETWORK_RETRIES="2")
    )

    assert config.is_production is True
    assert config.placeholders_enabled is False
    assert config.app_base_url == "https://example.com"
    assert config.stripe_max_network_retries == 2


@pytest.mark.parametrize("missing", ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "STRIPE_PRICE_PRO_ANNUAL"])
def test_missing_required_values_fail_loudly(missing):
    env = _env()
    del env[missing]

    with pytest.raises(ValueError) as excinfo:
        load_billing_config(env)

    assert missing in str(excinfo.value)


def test_credential_sources_are_ordered():
    account = {"type": "service_account", "project_id": "demo", "client_email": "svc@demo", "private_key": "key"}
    config = load_billing_config(
        _env(
            FIREBASE_SERVICE_ACCOUNT=json.dumps(account),
            FIREBASE_PROJECT_ID="demo",
            FIREBASE_CLIENT_EMAIL="svc@demo",
            FIREBASE_PRIVATE_KEY="line1\\nline2",
            GOOGLE_APPLICATION_CREDENTIALS="/secrets/sa.json",
        )
    )

    sources = config.admin.credential_sources
    assert [source.name for source in sources] == [
        "service_account_json",
        "service_account_fields",
        "credentials_file",
        "application_default",
    ]
    assert sources[1].service_account_info["private_key"] == "line1\nline2"
    assert sources[2].certificate_path == "/secrets/sa.json"
    assert config.admin.project_id == "demo"


def test_invalid_service_account_json_is_rejected():
    with pytest.raises(ValueError):
        load_billing_config(_env(FIREBASE_SERVICE_ACCOUNT="{not json"))


def test_cors_origins():
    assert parse_cors_origins({}) == ("*",)
    assert cors_allows_credentials({}) is False

    env = {"CORS_ALLOWED_ORIGINS": "https://a.example, https://b.example"}
    assert parse_cors_origins(env) == ("https://a.example", "https://b.example")
    assert cors_allows_credentials(env) is True
