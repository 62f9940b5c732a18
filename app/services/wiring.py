from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from app.services.event_log import ProcessedEvents
from app.services.gateway import GatewayConfigError, StripeGateway
from app.services.openrouter import ProvisioningConfigError
from app.services.provisioning import CreditProvisioner
from app.services.users import UserStore
from app.services.webhooks import WebhookRouter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    users: UserStore
    gateway: Optional[StripeGateway] = None
    provisioner: Optional[CreditProvisioner] = None
    webhooks: Optional[WebhookRouter] = None


def build_services() -> Services:
    """Construct every collaborator once at startup.

    Missing credentials leave the dependent service unset; its routes then
    answer 501 instead of failing the whole app.
    """
    users = UserStore.from_settings()
    services = Services(users=users)
    try:
        services.gateway = StripeGateway.from_settings()
    except GatewayConfigError as exc:
        logger.warning("Stripe disabled: %s", exc)
    try:
        services.provisioner = CreditProvisioner.from_settings(users)
    except ProvisioningConfigError as exc:
        logger.warning("Key provisioning disabled: %s", exc)
    if services.gateway and services.provisioner:
        services.webhooks = WebhookRouter(
            services.gateway,
            users,
            services.provisioner,
            ProcessedEvents.from_settings(),
        )
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_store(request: Request) -> UserStore:
    return get_services(request).users


def require_gateway(request: Request) -> StripeGateway:
    gateway = get_services(request).gateway
    if gateway is None:
        raise HTTPException(501, "Stripe is not configured")
    return gateway


def require_provisioner(request: Request) -> CreditProvisioner:
    provisioner = get_services(request).provisioner
    if provisioner is None:
        raise HTTPException(501, "Key provisioning is not configured")
    return provisioner


def optional_provisioner(request: Request) -> Optional[CreditProvisioner]:
    return get_services(request).provisioner


def require_webhook_router(request: Request) -> WebhookRouter:
    webhooks = get_services(request).webhooks
    if webhooks is None:
        raise HTTPException(501, "Stripe webhook handling is not configured")
    return webhooks
