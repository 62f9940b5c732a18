from __future__ import annotations

from typing import Any, Dict, Optional

import stripe

from app.core.plans import Plan
from app.core.settings import S


class GatewayConfigError(RuntimeError):
    pass


class StripeGateway:
    """Explicitly constructed Stripe handle; credentials travel with each call."""

    def __init__(self, secret_key: str, webhook_secret: str = "") -> None:
        if not secret_key:
            raise GatewayConfigError("STRIPE_SECRET_KEY not set")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(S.stripe_secret_key, S.stripe_webhook_secret)

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> Any:
        if not self.webhook_secret:
            raise GatewayConfigError("STRIPE_WEBHOOK_SECRET not set")
        return stripe.Webhook.construct_event(payload=payload, sig_header=sig_header or "", secret=self.webhook_secret)

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key)

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"app_user_id": user_id}}
        if email:
            params["email"] = email
        cust = stripe.Customer.create(api_key=self.secret_key, **params)
        return cust["id"]

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        plan: Plan,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Any:
        if not plan.price_id:
            raise GatewayConfigError(f"{plan.price_env_var} not set")
        metadata = {
            "app_user_id": user_id,
            "plan_id": plan.plan_id,
            "is_subscription": "true" if plan.is_subscription else "false",
        }
        params: Dict[str, Any] = {}
        if plan.is_subscription:
            # renewal invoices only reach the subscription, not the session
            params["subscription_data"] = {"metadata": metadata}
        return stripe.checkout.Session.create(
            api_key=self.secret_key,
            customer=customer_id,
            mode="subscription" if plan.is_subscription else "payment",
            payment_method_types=["card"],
            line_items=[{"price": plan.price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata=metadata,
            **params,
        )

    def create_portal_session(self, customer_id: str, return_url: str) -> Any:
        return stripe.billing_portal.Session.create(
            api_key=self.secret_key,
            customer=customer_id,
            return_url=return_url,
        )


def period_end_ms(subscription: Any) -> Optional[int]:
    """Current period end in epoch milliseconds.

    Newer API versions moved ``current_period_end`` onto subscription items.
    """
    end = field_of(subscription, "current_period_end")
    if not end:
        items = field_of(subscription, "items") or {}
        data = field_of(items, "data") or []
        if data:
            end = field_of(data[0], "current_period_end")
    return int(end) * 1000 if end else None


def field_of(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, None)
