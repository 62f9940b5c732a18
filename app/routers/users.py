from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from app.auth.deps import get_authenticated_user_sub
from app.core.settings import S
from app.models import BootstrapReq, UserDataResp, UserKeyResp
from app.services.openrouter import KeyServiceError
from app.services.provisioning import CreditProvisioner
from app.services.users import LedgerRecord, UserStore
from app.services.wiring import get_user_store, optional_provisioner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["users"])


def visible_credits(rec: LedgerRecord) -> float:
    total = rec.credits
    if rec.subscription_active:
        total += float(rec.subscription.get("user_credits") or 0)
    return round(total, 2)


@router.get("/keys/me", response_model=UserKeyResp)
def get_user_key(
    user_sub: str = Depends(get_authenticated_user_sub),
    users: UserStore = Depends(get_user_store),
) -> Dict[str, Any]:
    rec = users.get(user_sub)
    if rec is None:
        raise HTTPException(404, "User not found")
    if not rec.openrouter_key:
        raise HTTPException(404, "API key not found. Purchase credits to receive your API key.")
    return {"apiKey": rec.openrouter_key, "credits": visible_credits(rec)}


@router.get("/users/me", response_model=UserDataResp)
def get_user_data(
    user_sub: str = Depends(get_authenticated_user_sub),
    users: UserStore = Depends(get_user_store),
) -> Dict[str, Any]:
    rec = users.get(user_sub)
    if rec is None:
        raise HTTPException(404, "User not found")
    sub = rec.subscription
    return {
        "credits": visible_credits(rec),
        "one_time_credits": rec.one_time_credits,
        "has_key": rec.has_key,
        "subscription": {
            "status": rec.subscription_status.value,
            "plan": sub.get("plan"),
            "plan_id": sub.get("plan_id"),
            "expires_at": sub.get("expires_at"),
            "credits": float(sub.get("user_credits") or 0),
        },
    }


@router.post("/users/bootstrap")
def bootstrap_user(
    body: BootstrapReq,
    user_sub: str = Depends(get_authenticated_user_sub),
    users: UserStore = Depends(get_user_store),
    provisioner: Optional[CreditProvisioner] = Depends(optional_provisioner),
) -> Dict[str, Any]:
    rec = users.ensure(user_sub, body.email)
    granted = 0.0
    grant = S.signup_grant_credits
    if grant > 0 and not rec.has_key and rec.one_time_credits == 0:
        if provisioner is None:
            raise HTTPException(501, "Key provisioning is not configured")
        try:
            provisioner.provision(user_sub, grant, False)
        except KeyServiceError as exc:
            logger.exception("Signup grant failed for user %s", user_sub)
            raise HTTPException(502, "Failed to provision API key") from exc
        granted = grant
    return {"ok": True, "granted": granted}
