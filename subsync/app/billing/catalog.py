"""Static plan catalog and price to plan resolution."""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .models import BillingInterval, PlanKey

DEFAULT_PLAN = PlanKey.BASIC


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan and the provider prices that sell it."""

    key: PlanKey
    display_name: str
    price_cents: int
    features: Tuple[str, ...]
    price_ids: Mapping[BillingInterval, str] = field(default_factory=dict)

    @property
    def display_price(self) -> str:
        return f"{self.price_cents / 100:.2f}"


_PLAN_METADATA: Dict[PlanKey, Tuple[str, int, Tuple[str, ...]]] = {
    PlanKey.BASIC: (
        "Basic",
        999,
        (
            "Create up to 5 service listings",
            "Access to SwapFeed",
            "Basic user profile",
        ),
    ),
    PlanKey.PRO: (
        "Professional",
        1999,
        (
            "Create up to 15 service listings",
            "Access to SwapFeed",
            "Enhanced user profile with analytics",
            "Priority in search results",
        ),
    ),
    PlanKey.BUSINESS: (
        "Business",
        3999,
        (
            "Unlimited service listings",
            "Access to SwapFeed",
            "Full user profile with advanced analytics",
            "Top placement in search results",
            "White-glove customer support",
        ),
    ),
    PlanKey.VERIFICATION: (
        "Verification Badge",
        500,
        (
            "Verified badge on your profile",
            "Increased trust with other users",
            "Priority in search results",
        ),
    ),
}


class PlanCatalog:
    """Immutable plan table with an inverse price lookup."""

    def __init__(self, plans: Mapping[PlanKey, PlanDefinition]) -> None:
        price_table: Dict[str, PlanKey] = {}
        for plan in plans.values():
            for price_id in plan.price_ids.values():
                owner = price_table.get(price_id)
                if owner is not None and owner != plan.key:
                    raise ValueError(f"Price {price_id} is assigned to both {owner.value} and {plan.key.value}")
                price_table[price_id] = plan.key
        self._plans = MappingProxyType(dict(plans))
        self._price_table = MappingProxyType(price_table)

    @property
    def plans(self) -> Mapping[PlanKey, PlanDefinition]:
        return self._plans

    def get(self, plan_key: PlanKey) -> PlanDefinition:
        """Return a plan definition, raising if unsupported."""

        try:
            return self._plans[plan_key]
        except KeyError as exc:
            raise KeyError(f"Unknown plan key: {plan_key}") from exc

    def price_for(self, plan_key: PlanKey, interval: BillingInterval) -> str:
        plan = self.get(plan_key)
        try:
            return plan.price_ids[interval]
        except KeyError as exc:
            raise KeyError(f"Plan {plan_key.value} has no {interval.value} price") from exc

    def plan_for_price(self, price_id: Optional[str]) -> Optional[PlanKey]:
        if not price_id:
            return None
        return self._price_table.get(price_id)

    def resolve_plan(
        self,
        price_id: Optional[str] = None,
        explicit_plan_id: Optional[str] = None,
    ) -> PlanKey:
        """Map provider data to a plan, preferring an explicit plan id.

        Unknown explicit ids and unknown prices fall through to the default plan.
        """

        if explicit_plan_id:
            try:
                explicit = PlanKey(str(explicit_plan_id).strip().lower())
            except ValueError:
                explicit = None
            if explicit is not None and explicit in self._plans:
                return explicit
        resolved = self.plan_for_price(price_id)
        if resolved is not None:
            return resolved
        return DEFAULT_PLAN


def build_plan_catalog(price_ids: Mapping[PlanKey, Mapping[BillingInterval, str]]) -> PlanCatalog:
    """Combine configured provider prices with the static plan metadata."""

    plans: Dict[PlanKey, PlanDefinition] = {}
    for key, (display_name, price_cents, features) in _PLAN_METADATA.items():
        plans[key] = PlanDefinition(
            key=key,
            display_name=display_name,
            price_cents=price_cents,
            features=features,
            price_ids=MappingProxyType(dict(price_ids.get(key, {}))),
        )
    return PlanCatalog(plans)
