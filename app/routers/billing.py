from __future__ import annotations

import logging
from typing import Dict

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.auth.deps import get_authenticated_user_sub
from app.core.plans import UnknownPlan, get_plan
from app.models import CheckoutSessionReq, CheckoutSessionResp, CustomerPortalReq, CustomerPortalResp
from app.services.gateway import GatewayConfigError, StripeGateway, field_of
from app.services.users import UserStore
from app.services.webhooks import WebhookRouter
from app.services.wiring import get_user_store, require_gateway, require_webhook_router

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


def get_or_create_customer(gateway: StripeGateway, users: UserStore, user_id: str) -> str:
    rec = users.ensure(user_id)
    if rec.stripe_customer_id:
        return rec.stripe_customer_id
    customer_id = gateway.create_customer(user_id, rec.email)
    users.set_customer(user_id, customer_id)
    return customer_id


@router.post("/api/stripe/webhook")
async def stripe_webhook(req: Request, webhooks: WebhookRouter = Depends(require_webhook_router)) -> JSONResponse:
    # the signature covers the exact bytes Stripe sent
    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    outcome = webhooks.handle_event(payload, sig)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/api/billing/checkout_session", response_model=CheckoutSessionResp)
def create_checkout_session(
    body: CheckoutSessionReq,
    user_sub: str = Depends(get_authenticated_user_sub),
    gateway: StripeGateway = Depends(require_gateway),
    users: UserStore = Depends(get_user_store),
) -> Dict[str, str]:
    if not body.plan_id or body.is_subscription is None or not body.success_url or not body.cancel_url:
        raise HTTPException(400, "Missing required parameters: planId, isSubscription (boolean), successUrl, cancelUrl")
    try:
        plan = get_plan(body.plan_id)
    except UnknownPlan as exc:
        raise HTTPException(400, "Invalid plan ID") from exc
    if plan.is_subscription != body.is_subscription:
        raise HTTPException(400, f"Plan {plan.plan_id} is {'a subscription' if plan.is_subscription else 'a one-time purchase'}")

    try:
        customer_id = get_or_create_customer(gateway, users, user_sub)
        session = gateway.create_checkout_session(
            customer_id=customer_id,
            plan=plan,
            user_id=user_sub,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except GatewayConfigError as exc:
        logger.error("Checkout unavailable: %s", exc)
        raise HTTPException(500, "Checkout is not configured") from exc
    except stripe.StripeError as exc:
        logger.exception("Stripe checkout failed for user %s", user_sub)
        raise HTTPException(500, "Failed to create checkout session") from exc

    logger.info("Created checkout session for user %s plan %s", user_sub, plan.plan_id)
    return {"url": field_of(session, "url") or ""}


@router.post("/api/billing/portal", response_model=CustomerPortalResp)
def create_customer_portal(
    body: CustomerPortalReq,
    user_sub: str = Depends(get_authenticated_user_sub),
    gateway: StripeGateway = Depends(require_gateway),
    users: UserStore = Depends(get_user_store),
) -> Dict[str, str]:
    if not body.return_url:
        raise HTTPException(400, "Missing required parameter: returnUrl")
    rec = users.get(user_sub)
    if rec is None:
        raise HTTPException(404, "User not found")
    if not rec.stripe_customer_id:
        raise HTTPException(404, "No Stripe customer ID found for this user")
    try:
        session = gateway.create_portal_session(rec.stripe_customer_id, body.return_url)
    except stripe.StripeError as exc:
        logger.exception("Stripe portal session failed for user %s", user_sub)
        raise HTTPException(500, "Failed to create customer portal session") from exc
    url = field_of(session, "url")
    if not url:
        raise HTTPException(500, "Stripe did not return a portal URL")
    return {"url": url}
