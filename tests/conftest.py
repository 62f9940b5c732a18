from __future__ import annotations

import asyncio
import copy
import hashlib
import hmac
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError
from starlette.requests import Request

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.settings import S
from app.services.openrouter import CreatedKey, KeyInfo, KeyServiceError
from app.services.provisioning import CreditProvisioner
from app.services.users import UserStore

WEBHOOK_SECRET = "whsec_test"


def _conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


def _missing(condition: Optional[str], item: Optional[Dict[str, Any]]) -> bool:
    # only the attribute_not_exists(...) form is used by the app
    if not condition:
        return True
    attr = condition[len("attribute_not_exists("):-1]
    return item is None or attr not in item


class FakeUsersTable:
    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.updates: List[Dict[str, Any]] = []

    def get_item(self, *, Key: Dict[str, str]) -> Dict[str, Any]:
        item = self.items.get(Key["user_sub"])
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, *, Item: Dict[str, Any], ConditionExpression: Optional[str] = None, **_: Any) -> None:
        if not _missing(ConditionExpression, self.items.get(Item["user_sub"])):
            raise _conditional_failure("PutItem")
        self.items[Item["user_sub"]] = copy.deepcopy(Item)

    def update_item(
        self,
        *,
        Key: Dict[str, str],
        UpdateExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ConditionExpression: Optional[str] = None,
        **_: Any,
    ) -> None:
        current = self.items.get(Key["user_sub"])
        if not _missing(ConditionExpression, current):
            raise _conditional_failure("UpdateItem")
        item = self.items.setdefault(Key["user_sub"], {"user_sub": Key["user_sub"]})
        names = ExpressionAttributeNames or {}
        expr = UpdateExpression.strip()
        assert expr.startswith("SET ")
        for assignment in expr[4:].split(","):
            left, right = assignment.split("=", 1)
            attr = names.get(left.strip(), left.strip())
            item[attr] = copy.deepcopy(ExpressionAttributeValues[right.strip()])
        self.updates.append({"user_sub": Key["user_sub"], "expr": expr})

    def query(self, *, IndexName: str, KeyConditionExpression: Any, Limit: int = 100, **_: Any) -> Dict[str, Any]:
        key, value = KeyConditionExpression.get_expression()["values"]
        matches = [
            {"user_sub": item["user_sub"], key.name: item[key.name]}
            for item in self.items.values()
            if item.get(key.name) == value
        ]
        return {"Items": matches[:Limit]}

    def seed(self, user_sub: str, **attrs: Any) -> Dict[str, Any]:
        item = {"user_sub": user_sub, "one_time_credits": 0, "credits": 0}
        item.update(attrs)
        self.items[user_sub] = item
        return item


class FakeEventsTable:
    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.error_code: Optional[str] = None

    def put_item(self, *, Item: Dict[str, Any], ConditionExpression: Optional[str] = None, **_: Any) -> None:
        if self.error_code:
            raise ClientError({"Error": {"Code": self.error_code, "Message": self.error_code}}, "PutItem")
        if not _missing(ConditionExpression, self.items.get(Item["event_id"])):
            raise _conditional_failure("PutItem")
        self.items[Item["event_id"]] = dict(Item)

    def delete_item(self, *, Key: Dict[str, str]) -> None:
        self.items.pop(Key["event_id"], None)


class FakeKeyService:
    """In-memory stand-in for the OpenRouter provisioning API."""

    def __init__(self) -> None:
        self.keys: Dict[str, Dict[str, float]] = {}
        self.calls: List[tuple] = []
        self.fail_get = False
        self.fail_update = False
        self.fail_create = False

    def add(self, key_hash: str, *, usage: float, limit: float) -> None:
        self.keys[key_hash] = {"usage": usage, "limit": limit}

    def get_key(self, key_hash: str) -> KeyInfo:
        self.calls.append(("get_key", key_hash))
        if self.fail_get:
            raise KeyServiceError("get_key", "503 Service Unavailable", status=503)
        k = self.keys[key_hash]
        return KeyInfo(hash=key_hash, usage=k["usage"], limit=k["limit"])

    def create_key(self, *, name: str, label: str, limit: float) -> CreatedKey:
        self.calls.append(("create_key", label, limit))
        if self.fail_create:
            raise KeyServiceError("create_key", "500 Internal Server Error", status=500)
        key_hash = f"hash-{len(self.keys) + 1}"
        self.keys[key_hash] = {"usage": 0.0, "limit": limit}
        return CreatedKey(hash=key_hash, key=f"sk-or-{key_hash}")

    def update_limit(self, key_hash: str, limit: float) -> None:
        self.calls.append(("update_limit", key_hash, limit))
        if self.fail_update:
            raise KeyServiceError("update_limit", "500 Internal Server Error", status=500)
        self.keys[key_hash]["limit"] = limit


@pytest.fixture
def users_table() -> FakeUsersTable:
    return FakeUsersTable()


@pytest.fixture
def events_table() -> FakeEventsTable:
    return FakeEventsTable()


@pytest.fixture
def users(users_table: FakeUsersTable) -> UserStore:
    return UserStore(users_table, "stripe_customer_id-index")


@pytest.fixture
def key_service() -> FakeKeyService:
    return FakeKeyService()


@pytest.fixture
def provisioner(users: UserStore, key_service: FakeKeyService) -> CreditProvisioner:
    return CreditProvisioner(users, key_service)


@pytest.fixture
def settings_override():
    """Temporarily replace fields on the frozen settings object."""
    saved: Dict[str, Any] = {}

    def apply(**values: Any) -> None:
        for name, value in values.items():
            saved.setdefault(name, getattr(S, name))
            object.__setattr__(S, name, value)

    yield apply
    for name, value in saved.items():
        object.__setattr__(S, name, value)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, ts: Optional[int] = None) -> str:
    ts = int(time.time()) if ts is None else ts
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def event_payload(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_123") -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": data_object}}
    ).encode("utf-8")


def build_request(
    *,
    method: str = "POST",
    path: str = "/",
    body: bytes = b"",
    headers: Optional[Dict[str, str]] = None,
    app: Any = None,
) -> Request:
    scope: Dict[str, Any] = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "scheme": "http",
        "server": ("testserver", 80),
        "query_string": b"",
    }
    if app is not None:
        scope["app"] = app

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def run_async(coro):
    return asyncio.run(coro)
