from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from boto3.dynamodb.conditions import Key

from app.core.settings import S
from app.core.tables import T
from app.core.time import now_ts

logger = logging.getLogger(__name__)


class UserNotFound(LookupError):
    pass


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"

    @classmethod
    def parse(cls, value: Any) -> "SubscriptionStatus":
        try:
            return cls(str(value or "").lower())
        except ValueError:
            return cls.INACTIVE


def to_ddb_number(value: Any) -> Decimal:
    # the DynamoDB resource API rejects floats
    return Decimal(str(value or 0))


def from_ddb_number(value: Any) -> float:
    if value is None:
        return 0.0
    return float(value)


def _ddb_clean(obj: Any) -> Any:
    if isinstance(obj, bool) or obj is None or isinstance(obj, (str, Decimal)):
        return obj
    if isinstance(obj, (int, float)):
        return to_ddb_number(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: _ddb_clean(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_ddb_clean(v) for v in obj]
    return obj


def empty_subscription() -> Dict[str, Any]:
    return {
        "status": SubscriptionStatus.INACTIVE.value,
        "plan_id": None,
        "plan": None,
        "expires_at": None,
        "stripe_subscription_id": None,
        "openrouter_credits": 0,
        "user_credits": 0,
    }


@dataclass
class LedgerRecord:
    user_sub: str
    email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    openrouter_key_hash: Optional[str] = None
    openrouter_key: Optional[str] = None
    one_time_credits: float = 0.0
    credits: float = 0.0
    subscription: Dict[str, Any] = field(default_factory=empty_subscription)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "LedgerRecord":
        sub = dict(empty_subscription())
        sub.update(item.get("subscription") or {})
        return cls(
            user_sub=item["user_sub"],
            email=item.get("email"),
            stripe_customer_id=item.get("stripe_customer_id"),
            openrouter_key_hash=item.get("openrouter_key_hash"),
            openrouter_key=item.get("openrouter_key"),
            one_time_credits=from_ddb_number(item.get("one_time_credits")),
            credits=from_ddb_number(item.get("credits")),
            subscription=sub,
        )

    @property
    def has_key(self) -> bool:
        return bool(self.openrouter_key_hash)

    @property
    def subscription_status(self) -> SubscriptionStatus:
        return SubscriptionStatus.parse(self.subscription.get("status"))

    @property
    def subscription_active(self) -> bool:
        # canceled and past_due subscriptions keep their allotment on the key
        # until the period ends or a failed payment strips it
        return self.subscription_status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.PAST_DUE,
        )

    @property
    def subscription_credits(self) -> float:
        return from_ddb_number(self.subscription.get("openrouter_credits"))

    @property
    def subscription_plan_id(self) -> Optional[str]:
        return self.subscription.get("plan_id")


class UserStore:
    """Per-user ledger records in the DynamoDB users table."""

    def __init__(self, table: Any, customer_index: str) -> None:
        self.table = table
        self.customer_index = customer_index

    @classmethod
    def from_settings(cls) -> "UserStore":
        return cls(T.users, S.users_customer_index)

    def get(self, user_id: str) -> Optional[LedgerRecord]:
        item = self.table.get_item(Key={"user_sub": user_id}).get("Item")
        return LedgerRecord.from_item(item) if item else None

    def require(self, user_id: str) -> LedgerRecord:
        rec = self.get(user_id)
        if rec is None:
            raise UserNotFound(user_id)
        return rec

    def ensure(self, user_id: str, email: Optional[str] = None) -> LedgerRecord:
        rec = self.get(user_id)
        if rec is not None:
            return rec
        ts = now_ts()
        item = {
            "user_sub": user_id,
            "email": email,
            "one_time_credits": 0,
            "credits": 0,
            "subscription": empty_subscription(),
            "created_at": ts,
            "updated_at": ts,
        }
        self.table.put_item(Item=_ddb_clean(item))
        logger.info("Created ledger record for user %s", user_id)
        return LedgerRecord.from_item(item)

    def find_by_customer(self, customer_id: str) -> Optional[LedgerRecord]:
        if not customer_id:
            return None
        resp = self.table.query(
            IndexName=self.customer_index,
            KeyConditionExpression=Key("stripe_customer_id").eq(customer_id),
            Limit=1,
        )
        items = resp.get("Items", [])
        if not items:
            return None
        # the index may project keys only
        return self.get(items[0]["user_sub"])

    def _set(self, user_id: str, fields: Dict[str, Any], *, condition_expression: Optional[str] = None) -> None:
        names: Dict[str, str] = {"#u": "updated_at"}
        values: Dict[str, Any] = {":t": now_ts()}
        sets = []
        for i, (attr, value) in enumerate(fields.items(), start=1):
            names[f"#k{i}"] = attr
            values[f":v{i}"] = _ddb_clean(value)
            sets.append(f"#k{i} = :v{i}")
        sets.append("#u = :t")
        kwargs: Dict[str, Any] = {
            "Key": {"user_sub": user_id},
            "UpdateExpression": "SET " + ", ".join(sets),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        if condition_expression:
            kwargs["ConditionExpression"] = condition_expression
        self.table.update_item(**kwargs)

    def set_customer(self, user_id: str, customer_id: str) -> None:
        self._set(user_id, {"stripe_customer_id": customer_id})

    def set_key(self, user_id: str, key_hash: str, key_secret: str) -> None:
        # hash and secret are written together, and only once
        self._set(
            user_id,
            {"openrouter_key_hash": key_hash, "openrouter_key": key_secret},
            condition_expression="attribute_not_exists(openrouter_key_hash)",
        )

    def update_subscription(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        rec = self.require(user_id)
        sub = dict(rec.subscription)
        for k, v in fields.items():
            sub[k] = v.value if isinstance(v, Enum) else v
        self._set(user_id, {"subscription": sub})
        return sub

    def set_subscription_credits(self, user_id: str, native: float, display: float) -> None:
        self.update_subscription(user_id, openrouter_credits=native, user_credits=display)

    def add_one_time_credits(self, rec: LedgerRecord, native: float, display: float) -> None:
        self._set(
            rec.user_sub,
            {
                "one_time_credits": rec.one_time_credits + float(native),
                "credits": rec.credits + float(display),
            },
        )
