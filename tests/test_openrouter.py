from __future__ import annotations

import unittest
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import requests

from app.services.openrouter import KeyServiceError, OpenRouterKeys, ProvisioningConfigError


def make_response(status: int, body: Optional[Dict[str, Any]] = None, *, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.reason = "OK" if status < 300 else "Error"
    resp.text = text
    resp.content = b"{}" if body is not None else text.encode()
    if body is not None:
        resp.json.return_value = body
    else:
        resp.json.side_effect = ValueError("no json")
    return resp


class FakeSession:
    def __init__(self, *responses: Any) -> None:
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> Any:
        self.calls.append({"method": method, "url": url, **kwargs})
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


def client(session: FakeSession) -> OpenRouterKeys:
    return OpenRouterKeys("prov-key", base_url="https://openrouter.test/api/v1/", timeout=3, session=session)


class TestOpenRouterKeys(unittest.TestCase):
    def test_requires_provisioning_key(self):
        with self.assertRaises(ProvisioningConfigError):
            OpenRouterKeys("")

    def test_get_key_reads_usage_and_limit(self):
        session = FakeSession(make_response(200, {"data": {"hash": "h1", "usage": 12.5, "limit": 100}}))
        info = client(session).get_key("h1")
        self.assertEqual(info.usage, 12.5)
        self.assertEqual(info.limit, 100)
        self.assertEqual(info.remaining, 87.5)
        call = session.calls[0]
        self.assertEqual(call["method"], "GET")
        self.assertEqual(call["url"], "https://openrouter.test/api/v1/keys/h1")
        self.assertEqual(call["headers"]["Authorization"], "Bearer prov-key")
        self.assertEqual(call["timeout"], 3)

    def test_get_key_treats_null_limit_as_zero(self):
        session = FakeSession(make_response(200, {"data": {"hash": "h1", "usage": 0, "limit": None}}))
        self.assertEqual(client(session).get_key("h1").limit, 0)

    def test_create_key_returns_hash_and_secret(self):
        session = FakeSession(make_response(201, {"data": {"hash": "h2", "name": "Customer Key"}, "key": "sk-or-v1-abc"}))
        created = client(session).create_key(name="Customer Key", label="customer-u1", limit=450)
        self.assertEqual(created.hash, "h2")
        self.assertEqual(created.key, "sk-or-v1-abc")
        self.assertEqual(session.calls[0]["json"], {"name": "Customer Key", "label": "customer-u1", "limit": 450})

    def test_create_key_without_secret_fails(self):
        session = FakeSession(make_response(201, {"data": {"hash": "h2"}}))
        with self.assertRaises(KeyServiceError):
            client(session).create_key(name="Customer Key", label="customer-u1", limit=450)

    def test_update_limit_patches_key(self):
        session = FakeSession(make_response(200, {"data": {"hash": "h1", "limit": 700}}))
        client(session).update_limit("h1", 700)
        self.assertEqual(session.calls[0]["method"], "PATCH")
        self.assertEqual(session.calls[0]["json"], {"limit": 700})

    def test_non_2xx_raises_with_status(self):
        session = FakeSession(make_response(404, text="not found"))
        with self.assertRaises(KeyServiceError) as ctx:
            client(session).get_key("missing")
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.operation, "get_key")

    def test_transport_errors_raise(self):
        session = FakeSession(requests.Timeout("timed out"))
        with self.assertRaises(KeyServiceError):
            client(session).update_limit("h1", 10)

    def test_invalid_json_raises(self):
        session = FakeSession(make_response(200, text="<html>"))
        with self.assertRaises(KeyServiceError):
            client(session).get_key("h1")


if __name__ == "__main__":
    unittest.main()
