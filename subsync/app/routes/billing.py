"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..billing import AuthenticationError, BillingError, Principal
from ..schemas.billing import (
    CheckoutSessionRequest,
    SessionUrlResponse,
    SubscriptionActionRequest,
    SubscriptionActionResponse,
    SubscriptionInfoRequest,
    SubscriptionInfoResponse,
    WebhookAcknowledgement,
)
from ..services.billing import (
    get_billing_service,
    get_identity_verifier,
    get_subscription_info_aggregator,
    get_webhook_processor,
)

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store, max-age=0"}
BEARER_PREFIX = "Bearer "

router = APIRouter(prefix="/api", tags=["billing"])


def billing_error_response(exc: BillingError, headers: Optional[Mapping[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=dict(exc.payload),
        headers=dict(headers) if headers else None,
    )


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    return billing_error_response(exc)


def get_current_principal(authorization: Optional[str] = Header(None)) -> Principal:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationError(message="No auth token")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError(message="No auth token")
    return get_identity_verifier().verify(token)


@router.post("/create-checkout-session", response_model=SessionUrlResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_user: Principal = Depends(get_current_principal),
) -> SessionUrlResponse:
    service = get_billing_service()
    session = service.start_checkout(current_user, payload.plan_id, payload.interval)
    return SessionUrlResponse(url=session.checkout_url)


@router.post("/create-customer-portal", response_model=SessionUrlResponse)
def create_customer_portal(
    *,
    current_user: Principal = Depends(get_current_principal),
) -> SessionUrlResponse:
    service = get_billing_service()
    return SessionUrlResponse(url=service.start_portal(current_user))


@router.post("/webhooks/stripe", response_model=WebhookAcknowledgement)
async def receive_stripe_webhook(request: Request) -> WebhookAcknowledgement:
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")
    processor = get_webhook_processor()
    outcome = await run_in_threadpool(processor.handle_event, raw_body, signature)
    if outcome.error:
        logger.warning("Acknowledged event %s with failure: %s", outcome.event_id, outcome.error)
    return WebhookAcknowledgement()


@router.options("/stripe/subscription-info")
def subscription_info_options() -> JSONResponse:
    return JSONResponse(content={}, status_code=status.HTTP_200_OK, headers=NO_STORE_HEADERS)


@router.post("/stripe/subscription-info")
def subscription_info(payload: SubscriptionInfoRequest) -> JSONResponse:
    aggregator = get_subscription_info_aggregator()
    try:
        info = aggregator.get_info(
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
        )
    except BillingError as exc:
        return billing_error_response(exc, NO_STORE_HEADERS)
    body = SubscriptionInfoResponse.from_info(info)
    return JSONResponse(content=body.model_dump(mode="json"), headers=NO_STORE_HEADERS)


@router.post("/cancel-subscription", response_model=SubscriptionActionResponse)
def cancel_subscription(
    payload: SubscriptionActionRequest,
    *,
    current_user: Principal = Depends(get_current_principal),
) -> SubscriptionActionResponse:
    service = get_billing_service()
    result = service.cancel_at_period_end(current_user, payload.subscription_id)
    return SubscriptionActionResponse.from_result(result)


@router.post("/resume-subscription", response_model=SubscriptionActionResponse)
def resume_subscription(
    payload: SubscriptionActionRequest,
    *,
    current_user: Principal = Depends(get_current_principal),
) -> SubscriptionActionResponse:
    service = get_billing_service()
    result = service.resume(current_user, payload.subscription_id)
    return SubscriptionActionResponse.from_result(result)
