from __future__ import annotations

from fastapi import APIRouter

from app.core.plans import list_plans

router = APIRouter(tags=["misc"])

@router.get("/api/ping")
async def ping():
    return {"ok": True}

@router.get("/healthz")
async def healthz():
    return {"status": "ok"}

@router.get("/api/plans")
async def plans():
    return {
        "plans": [
            {
                "plan_id": p.plan_id,
                "credits": p.display_credits,
                "is_subscription": p.is_subscription,
                "interval": p.interval,
            }
            for p in list_plans()
        ]
    }
