from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from app.core.settings import S

logger = logging.getLogger(__name__)


class ProvisioningConfigError(RuntimeError):
    pass


class KeyServiceError(RuntimeError):
    def __init__(self, operation: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(f"OpenRouter {operation} failed: {message}")
        self.operation = operation
        self.status = status


@dataclass(frozen=True)
class KeyInfo:
    hash: str
    usage: float
    limit: float

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit - self.usage)


@dataclass(frozen=True)
class CreatedKey:
    hash: str
    key: str


def _key_data(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data")
    return data if isinstance(data, dict) else body


class OpenRouterKeys:
    """Client for OpenRouter's key provisioning endpoints."""

    def __init__(
        self,
        provisioning_key: str,
        *,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not provisioning_key:
            raise ProvisioningConfigError("OPENROUTER_PROVISIONING_KEY not set")
        self.provisioning_key = provisioning_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "OpenRouterKeys":
        return cls(
            S.openrouter_provisioning_key,
            base_url=S.openrouter_base_url,
            timeout=S.openrouter_timeout_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.provisioning_key}",
            "Content-Type": "application/json",
        }

    def _request(self, operation: str, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise KeyServiceError(operation, str(exc)) from exc
        if r.status_code >= 300:
            logger.error("OpenRouter %s returned %s: %s", operation, r.status_code, r.text[:500])
            raise KeyServiceError(operation, f"{r.status_code} {r.reason}", status=r.status_code)
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as exc:
            raise KeyServiceError(operation, "invalid JSON response", status=r.status_code) from exc

    def get_key(self, key_hash: str) -> KeyInfo:
        data = _key_data(self._request("get_key", "GET", f"/keys/{key_hash}"))
        return KeyInfo(
            hash=data.get("hash") or key_hash,
            usage=float(data.get("usage") or 0),
            limit=float(data.get("limit") or 0),
        )

    def create_key(self, *, name: str, label: str, limit: float) -> CreatedKey:
        body = self._request("create_key", "POST", "/keys", {"name": name, "label": label, "limit": limit})
        data = _key_data(body)
        key_hash = data.get("hash")
        secret = body.get("key") or data.get("key")
        if not key_hash or not secret:
            raise KeyServiceError("create_key", "response missing hash or key")
        return CreatedKey(hash=key_hash, key=secret)

    def update_limit(self, key_hash: str, limit: float) -> None:
        self._request("update_limit", "PATCH", f"/keys/{key_hash}", {"limit": limit})
