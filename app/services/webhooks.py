from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
from botocore.exceptions import ClientError

from app.core.plans import UnknownPlan, get_plan
from app.metrics import record_webhook
from app.services.event_log import ProcessedEvents
from app.services.gateway import GatewayConfigError, StripeGateway, field_of, period_end_ms
from app.services.provisioning import CreditProvisioner
from app.services.users import LedgerRecord, SubscriptionStatus, UserNotFound, UserStore

logger = logging.getLogger(__name__)


class WebhookPayloadError(ValueError):
    pass


class WebhookEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"

    @classmethod
    def classify(cls, raw: Optional[str]) -> Optional["WebhookEventType"]:
        try:
            return cls(raw)
        except ValueError:
            return None


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **extra: Any) -> "WebhookOutcome":
        return cls(200, {"received": True, **extra})

    @classmethod
    def error(cls, status_code: int, message: str) -> "WebhookOutcome":
        return cls(status_code, {"error": message})

    @property
    def outcome(self) -> str:
        if self.status_code == 200:
            return "ignored" if self.body.get("ignored") else ("deduped" if self.body.get("deduped") else "ok")
        return str(self.status_code)


def metadata_of(obj: Any) -> Dict[str, Any]:
    md = field_of(obj, "metadata")
    if md is None:
        return {}
    if isinstance(md, dict):
        return dict(md)
    to_dict = getattr(md, "to_dict", None)
    return dict(to_dict()) if callable(to_dict) else {}


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    sub = field_of(invoice, "subscription")
    if sub:
        return sub if isinstance(sub, str) else field_of(sub, "id")
    # newer API versions nest it under parent.subscription_details
    details = field_of(field_of(invoice, "parent"), "subscription_details")
    sub = field_of(details, "subscription")
    if sub and not isinstance(sub, str):
        sub = field_of(sub, "id")
    return sub or None


class WebhookRouter:
    """Verifies Stripe deliveries and applies them to the ledger and key."""

    HANDLERS: Dict[WebhookEventType, str] = {
        WebhookEventType.CHECKOUT_COMPLETED: "_on_checkout_completed",
        WebhookEventType.INVOICE_PAID: "_on_invoice_paid",
        WebhookEventType.PAYMENT_FAILED: "_on_subscription_lapsed",
        WebhookEventType.SUBSCRIPTION_DELETED: "_on_subscription_lapsed",
        WebhookEventType.SUBSCRIPTION_UPDATED: "_on_subscription_updated",
    }

    def __init__(
        self,
        gateway: StripeGateway,
        users: UserStore,
        provisioner: CreditProvisioner,
        events: Optional[ProcessedEvents] = None,
    ) -> None:
        self.gateway = gateway
        self.users = users
        self.provisioner = provisioner
        self.events = events

    def handle_event(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        try:
            event = self.gateway.construct_event(raw_body, signature)
        except GatewayConfigError as exc:
            logger.error("Webhook rejected: %s", exc)
            return WebhookOutcome.error(500, str(exc))
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            record_webhook("unverified", "400")
            return WebhookOutcome.error(400, f"Webhook Error: {exc}")

        event_id = field_of(event, "id")
        raw_type = field_of(event, "type") or ""
        kind = WebhookEventType.classify(raw_type)
        if kind is None:
            logger.debug("Ignoring unhandled Stripe event %s (%s)", event_id, raw_type)
            record_webhook("unhandled", "ignored")
            return WebhookOutcome.ok(ignored=True)

        try:
            claimed = self.events is None or not event_id or self.events.claim(event_id, raw_type)
        except ClientError:
            logger.exception("Could not record Stripe event %s", event_id)
            record_webhook(raw_type, "500")
            return WebhookOutcome.error(500, "Webhook Error: event log unavailable")
        if not claimed:
            logger.info("Stripe event %s already processed", event_id)
            record_webhook(raw_type, "deduped")
            return WebhookOutcome.ok(deduped=True)

        obj = field_of(field_of(event, "data"), "object") or {}
        handler: Callable[[Any, WebhookEventType], WebhookOutcome] = getattr(self, self.HANDLERS[kind])
        try:
            outcome = handler(obj, kind)
        except (WebhookPayloadError, UnknownPlan) as exc:
            logger.warning("Rejected %s event %s: %s", raw_type, event_id, exc)
            outcome = WebhookOutcome.error(400, str(exc))
        except UserNotFound as exc:
            logger.warning("No user for %s event %s: %s", raw_type, event_id, exc)
            outcome = WebhookOutcome.error(404, "User not found")
        except Exception as exc:
            logger.exception("Failed handling %s event %s", raw_type, event_id)
            if self.events is not None and event_id:
                self.events.release(event_id)
            outcome = WebhookOutcome.error(500, f"Webhook Error: {exc}")

        record_webhook(raw_type, outcome.outcome)
        return outcome

    def _user_for_customer(self, obj: Any) -> LedgerRecord:
        customer_id = field_of(obj, "customer")
        if customer_id and not isinstance(customer_id, str):
            customer_id = field_of(customer_id, "id")
        rec = self.users.find_by_customer(customer_id or "")
        if rec is None:
            raise UserNotFound(f"customer {customer_id}")
        return rec

    def _on_checkout_completed(self, session: Any, kind: WebhookEventType) -> WebhookOutcome:
        md = metadata_of(session)
        user_id = md.get("app_user_id")
        plan_id = md.get("plan_id")
        if not user_id or not plan_id:
            raise WebhookPayloadError("Missing required metadata")
        plan = get_plan(plan_id)
        rec = self.users.require(user_id)

        mode = field_of(session, "mode")
        is_subscription = mode == "subscription" if mode else md.get("is_subscription") == "true"
        if is_subscription != plan.is_subscription:
            raise WebhookPayloadError(f"Plan {plan_id} does not match checkout mode {mode}")

        customer_id = field_of(session, "customer")
        if isinstance(customer_id, str) and customer_id and not rec.stripe_customer_id:
            self.users.set_customer(user_id, customer_id)

        if is_subscription:
            subscription_id = field_of(session, "subscription")
            if subscription_id and not isinstance(subscription_id, str):
                subscription_id = field_of(subscription_id, "id")
            if not subscription_id:
                raise WebhookPayloadError("Missing subscription ID")
            subscription = self.gateway.retrieve_subscription(subscription_id)
            self.users.update_subscription(
                user_id,
                status=SubscriptionStatus.ACTIVE,
                plan_id=plan.plan_id,
                plan=plan.interval,
                expires_at=period_end_ms(subscription),
                stripe_subscription_id=subscription_id,
            )
            key_hash = self.provisioner.provision(user_id, plan.native_credits, True)
        else:
            key_hash = self.provisioner.provision(user_id, plan.native_credits, False)
        return WebhookOutcome.ok(key=key_hash)

    def _on_invoice_paid(self, invoice: Any, kind: WebhookEventType) -> WebhookOutcome:
        rec = self._user_for_customer(invoice)
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            # one-off invoices carry no renewal
            return WebhookOutcome.ok(ignored=True)

        subscription = self.gateway.retrieve_subscription(subscription_id)
        plan_id = rec.subscription_plan_id or metadata_of(subscription).get("plan_id")
        if not plan_id:
            raise WebhookPayloadError("Invalid plan ID")
        plan = get_plan(plan_id)
        if not plan.is_subscription:
            raise WebhookPayloadError("Invalid plan ID")

        self.users.update_subscription(
            rec.user_sub,
            status=SubscriptionStatus.ACTIVE,
            plan_id=plan.plan_id,
            expires_at=period_end_ms(subscription),
            stripe_subscription_id=subscription_id,
        )
        key_hash = self.provisioner.provision(rec.user_sub, plan.native_credits, True)
        return WebhookOutcome.ok(key=key_hash)

    def _is_other_subscription(self, rec: LedgerRecord, subscription_id: Optional[str]) -> bool:
        current = rec.subscription.get("stripe_subscription_id")
        return bool(current and subscription_id and current != subscription_id)

    def _on_subscription_lapsed(self, obj: Any, kind: WebhookEventType) -> WebhookOutcome:
        rec = self._user_for_customer(obj)
        if kind is WebhookEventType.PAYMENT_FAILED:
            subscription_id = invoice_subscription_id(obj)
        else:
            subscription_id = field_of(obj, "id")
        if self._is_other_subscription(rec, subscription_id):
            logger.info("Ignoring %s for superseded subscription %s", kind.value, subscription_id)
            return WebhookOutcome.ok(ignored=True)

        # the allotment is zeroed only once it is off the key
        self.provisioner.strip_subscription(rec.user_sub, rec.subscription_credits, SubscriptionStatus.INACTIVE)
        return WebhookOutcome.ok()

    def _on_subscription_updated(self, subscription: Any, kind: WebhookEventType) -> WebhookOutcome:
        rec = self._user_for_customer(subscription)
        if self._is_other_subscription(rec, field_of(subscription, "id")):
            return WebhookOutcome.ok(ignored=True)

        stripe_status = (field_of(subscription, "status") or "").lower()
        if field_of(subscription, "cancel_at_period_end"):
            cancel_at = field_of(subscription, "cancel_at")
            expires_at = int(cancel_at) * 1000 if cancel_at else period_end_ms(subscription)
            self.users.update_subscription(rec.user_sub, status=SubscriptionStatus.CANCELED, expires_at=expires_at)
        elif stripe_status == SubscriptionStatus.PAST_DUE.value:
            self.users.update_subscription(rec.user_sub, status=SubscriptionStatus.PAST_DUE)
        elif rec.subscription_status is SubscriptionStatus.CANCELED and stripe_status == "active":
            # cancellation was undone before the period ended
            self.users.update_subscription(
                rec.user_sub,
                status=SubscriptionStatus.ACTIVE,
                expires_at=period_end_ms(subscription),
            )
        else:
            return WebhookOutcome.ok(ignored=True)
        return WebhookOutcome.ok()


_unrouted = set(WebhookEventType) - set(WebhookRouter.HANDLERS)
if _unrouted:
    raise RuntimeError(f"Stripe event types without a handler: {sorted(t.value for t in _unrouted)}")
