from __future__ import annotations

import base64
import json
import logging
import threading
import time
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException, Request

from app.core.settings import S

logger = logging.getLogger(__name__)

# Google rotates securetoken keys daily; an unknown kid forces a refetch
JWKS_MAX_AGE_SECONDS = 3600
CLOCK_SKEW_SECONDS = 30


class _KeySet:
    def __init__(self) -> None:
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def _fetch(self) -> None:
        resp = requests.get(S.firebase_jwks_url, timeout=10)
        resp.raise_for_status()
        self._keys = {k["kid"]: k for k in resp.json().get("keys", []) if k.get("kid")}
        self._fetched_at = time.monotonic()

    def get(self, kid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            stale = time.monotonic() - self._fetched_at > JWKS_MAX_AGE_SECONDS
            if stale or kid not in self._keys:
                try:
                    self._fetch()
                except (requests.RequestException, ValueError) as exc:
                    logger.error("Could not fetch Firebase signing keys: %s", exc)
                    if not self._keys:
                        raise HTTPException(503, "Token verification unavailable") from exc
            return self._keys.get(kid)


_KEYS = _KeySet()


def _signing_key(kid: str) -> Dict[str, Any]:
    return _KEYS.get(kid) or {}


def verify_firebase_token(token: str) -> Dict[str, Any]:
    """Verify a Firebase ID token and return its claims.

    Checks the RS256 signature against Google's published keys, the
    audience (project id), the issuer, expiry, and that ``auth_time`` is
    not in the future.
    """
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token header") from exc
    if header.get("alg") != "RS256":
        raise HTTPException(401, "Unexpected token algorithm")

    jwk = _signing_key(header.get("kid", ""))
    if not jwk:
        raise HTTPException(401, "Unknown token key id")

    try:
        claims = jwt.decode(
            token,
            jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk)),
            algorithms=["RS256"],
            audience=S.firebase_project_id,
            issuer=f"https://securetoken.google.com/{S.firebase_project_id}",
            leeway=CLOCK_SKEW_SECONDS,
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc

    auth_time = claims.get("auth_time")
    if auth_time is not None and float(auth_time) > time.time() + CLOCK_SKEW_SECONDS:
        raise HTTPException(401, "Invalid token auth_time")
    if not str(claims.get("sub") or "").strip():
        raise HTTPException(401, "Token missing subject")
    return claims


def _unverified_sub(token: str) -> Optional[str]:
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    try:
        raw = base64.urlsafe_b64decode(parts[1] + "=" * (-len(parts[1]) % 4))
        sub = json.loads(raw.decode("utf-8")).get("sub")
    except (ValueError, UnicodeDecodeError, AttributeError):
        return None
    return sub if isinstance(sub, str) and sub.strip() else None


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def get_authenticated_user_sub(request: Request) -> str:
    """
    Caller identity for the callable routes.

    With FIREBASE_PROJECT_ID set, only a verified Firebase ID token is accepted.
    Otherwise (local dev): X-User-Sub, or Authorization: Bearer <user_id | unsigned jwt>.
    """
    if S.firebase_project_id:
        claims = verify_firebase_token(extract_bearer_token(request.headers.get("authorization")))
        return str(claims["sub"])

    dev_user = request.headers.get("x-user-sub")
    if dev_user:
        return dev_user
    token = extract_bearer_token(request.headers.get("authorization"))
    return _unverified_sub(token) or token
