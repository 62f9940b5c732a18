from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool

class CheckoutSessionReq(BaseModel):
    # fields are optional so missing ones surface as 400, not 422
    model_config = ConfigDict(populate_by_name=True)
    plan_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("plan_id", "planId"))
    is_subscription: Optional[StrictBool] = Field(default=None, validation_alias=AliasChoices("is_subscription", "isSubscription"))
    success_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("success_url", "successUrl"))
    cancel_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("cancel_url", "cancelUrl"))

class CheckoutSessionResp(BaseModel):
    url: str

class CustomerPortalReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    return_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("return_url", "returnUrl"))

class CustomerPortalResp(BaseModel):
    url: str

class UserKeyResp(BaseModel):
    apiKey: str
    credits: Optional[float] = None

class BootstrapReq(BaseModel):
    email: Optional[str] = None

class UserDataResp(BaseModel):
    credits: float = 0
    one_time_credits: float = 0
    has_key: bool = False
    subscription: Dict[str, Any] = Field(default_factory=dict)
