"""Billing configuration helpers."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import BillingInterval, PlanKey

DEFAULT_APP_BASE_URL = "http://localhost:3000"
PRODUCTION_ENVIRONMENTS = frozenset({"production", "prod"})


@dataclass(frozen=True)
class CredentialSource:
    """One way of obtaining admin SDK credentials, tried in order."""

    name: str
    service_account_info: Optional[Mapping[str, Any]] = None
    certificate_path: Optional[str] = None
    project_id: Optional[str] = None

    @property
    def uses_application_default(self) -> bool:
        return self.service_account_info is None and self.certificate_path is None


@dataclass(frozen=True)
class AdminContextConfig:
    """Credential sources for the identity and document store SDK."""

    credential_sources: Tuple[CredentialSource, ...]
    project_id: Optional[str] = None


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing provider and reconciliation flows."""

    stripe_secret_key: str
    stripe_webhook_secret: str
    price_ids: Mapping[PlanKey, Mapping[BillingInterval, str]]
    app_base_url: str = DEFAULT_APP_BASE_URL
    environment: str = "development"
    stripe_max_network_retries: int = 0
    admin: AdminContextConfig = field(default_factory=lambda: AdminContextConfig(credential_sources=()))

    @property
    def is_production(self) -> bool:
        return self.environment in PRODUCTION_ENVIRONMENTS

    @property
    def placeholders_enabled(self) -> bool:
        return not self.is_production


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _require(env_mapping: Mapping[str, str], name: str) -> str:
    value = (env_mapping.get(name) or "").strip()
    if not value:
        raise ValueError(f"Missing required environment variable {name}")
    return value


def price_env_name(plan_key: PlanKey, interval: BillingInterval) -> str:
    return f"STRIPE_PRICE_{plan_key.value.upper()}_{interval.value.upper()}"


def _load_price_ids(env_mapping: Mapping[str, str]) -> Mapping[PlanKey, Mapping[BillingInterval, str]]:
    missing = [
        price_env_name(plan_key, interval)
        for plan_key in PlanKey
        for interval in BillingInterval
        if not (env_mapping.get(price_env_name(plan_key, interval)) or "").strip()
    ]
    if missing:
        raise ValueError(f"Missing required environment variable {', '.join(missing)}")

    price_ids: Dict[PlanKey, Mapping[BillingInterval, str]] = {}
    for plan_key in PlanKey:
        price_ids[plan_key] = MappingProxyType(
            {interval: env_mapping[price_env_name(plan_key, interval)].strip() for interval in BillingInterval}
        )
    return MappingProxyType(price_ids)


def load_admin_config(env: Optional[Mapping[str, str]] = None) -> AdminContextConfig:
    """Collect credential sources in priority order.

    A full service account JSON wins, then discrete service account fields,
    then a credentials file, then application default credentials.
    """

    env_mapping = os.environ if env is None else env
    project_id = (
        env_mapping.get("FIREBASE_PROJECT_ID")
        or env_mapping.get("GOOGLE_CLOUD_PROJECT")
        or None
    )
    sources = []

    raw_account = (env_mapping.get("FIREBASE_SERVICE_ACCOUNT") or "").strip()
    if raw_account:
        try:
            info = json.loads(raw_account)
        except json.JSONDecodeError as exc:
            raise ValueError("FIREBASE_SERVICE_ACCOUNT must contain service account JSON") from exc
        sources.append(
            CredentialSource(
                name="service_account_json",
                service_account_info=MappingProxyType(info),
                project_id=info.get("project_id") or project_id,
            )
        )

    client_email = env_mapping.get("FIREBASE_CLIENT_EMAIL")
    private_key = env_mapping.get("FIREBASE_PRIVATE_KEY")
    if project_id and client_email and private_key:
        sources.append(
            CredentialSource(
                name="service_account_fields",
                service_account_info=MappingProxyType(
                    {
                        "type": "service_account",
                        "project_id": project_id,
                        "client_email": client_email,
                        # Keys stored in env files carry escaped newlines.
                        "private_key": private_key.replace("\\n", "\n"),
                        "token_uri": "https://oauth2.googleapis.com/token",
                    }
                ),
                project_id=project_id,
            )
        )

    credentials_path = env_mapping.get("GOOGLE_APPLICATION_CREDENTIALS")
    if credentials_path:
        sources.append(
            CredentialSource(
                name="credentials_file",
                certificate_path=credentials_path,
                project_id=project_id,
            )
        )

    sources.append(CredentialSource(name="application_default", project_id=project_id))
    return AdminContextConfig(credential_sources=tuple(sources), project_id=project_id)


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = _require(env_mapping, "STRIPE_SECRET_KEY")
    stripe_webhook_secret = _require(env_mapping, "STRIPE_WEBHOOK_SECRET")
    price_ids = _load_price_ids(env_mapping)

    app_base_url = env_mapping.get("APP_BASE_URL") or DEFAULT_APP_BASE_URL
    environment = (env_mapping.get("APP_ENV") or "development").strip().lower() or "development"
    max_retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=0))

    return BillingConfig(
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        price_ids=price_ids,
        app_base_url=app_base_url.rstrip("/"),
        environment=environment,
        stripe_max_network_retries=max_retries,
        admin=load_admin_config(env_mapping),
    )


def parse_cors_origins(env: Optional[Mapping[str, str]] = None) -> Tuple[str, ...]:
    env_mapping = os.environ if env is None else env
    raw = env_mapping.get("CORS_ALLOWED_ORIGINS") or "*"
    origins = tuple(origin.strip() for origin in raw.split(",") if origin.strip())
    return origins or ("*",)


def cors_allows_credentials(env: Optional[Mapping[str, str]] = None) -> bool:
    env_mapping = os.environ if env is None else env
    origins = parse_cors_origins(env_mapping)
    return _to_bool(env_mapping.get("CORS_ALLOW_CREDENTIALS"), default="*" not in origins)
