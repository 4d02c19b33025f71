"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CancellationResult, SubscriptionInfo


class CheckoutSessionRequest(BaseModel):
    # Validated by the service so that missing values produce a 400 response.
    plan_id: Optional[str] = Field(alias="planId", default=None)
    interval: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SessionUrlResponse(BaseModel):
    url: str


class SubscriptionInfoRequest(BaseModel):
    customer_id: Optional[str] = Field(alias="customerId", default=None)
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionInfoResponse(BaseModel):
    subscription: Optional[Dict[str, Any]] = None
    subscriptions: List[Dict[str, Any]] = Field(default_factory=list)
    invoices: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_info(cls, info: SubscriptionInfo) -> "SubscriptionInfoResponse":
        return cls(**info.to_response())


class SubscriptionActionRequest(BaseModel):
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionActionResponse(BaseModel):
    success: bool
    message: str

    @classmethod
    def from_result(cls, result: CancellationResult) -> "SubscriptionActionResponse":
        return cls(success=result.success, message=result.message)


class WebhookAcknowledgement(BaseModel):
    received: bool = True
