"""Credit provisioning: keeps an OpenRouter key's limit in step with the ledger.

After every call the key's limit is

    usage + remaining one-time credits + (subscription credits if active)

where ``usage`` and ``limit`` are read fresh from OpenRouter. Nothing is
written to the ledger until the create/patch call on the key succeeds.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, Optional

from app.core.plans import display_credits
from app.core.settings import S
from app.metrics import record_key_service_error, record_provisioning
from app.services.openrouter import KeyServiceError, OpenRouterKeys
from app.services.users import LedgerRecord, SubscriptionStatus, UserStore

logger = logging.getLogger(__name__)

_LOCKS: Dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


@contextmanager
def _user_lock(user_id: str) -> Iterator[None]:
    # serializes provisioning per user within this process only
    with _LOCKS_GUARD:
        lock = _LOCKS.setdefault(user_id, threading.Lock())
    with lock:
        yield


@dataclass(frozen=True)
class KeySnapshot:
    usage: float
    remaining_one_time: float


def remaining_one_time(limit: float, usage: float, rec: LedgerRecord, subscription_credits: Optional[float] = None) -> float:
    total_remaining = max(0.0, limit - usage)
    sub = rec.subscription_credits if subscription_credits is None else subscription_credits
    if rec.subscription_active and sub > 0:
        return max(0.0, total_remaining - sub)
    return total_remaining


class CreditProvisioner:
    def __init__(self, users: UserStore, keys: OpenRouterKeys, *, fallback_on_read_error: bool = True) -> None:
        self.users = users
        self.keys = keys
        self.fallback_on_read_error = fallback_on_read_error

    @classmethod
    def from_settings(cls, users: Optional[UserStore] = None) -> "CreditProvisioner":
        return cls(
            users or UserStore.from_settings(),
            OpenRouterKeys.from_settings(),
            fallback_on_read_error=S.openrouter_read_fallback,
        )

    def _snapshot(
        self,
        rec: LedgerRecord,
        subscription_credits: Optional[float] = None,
        *,
        allow_fallback: bool = True,
    ) -> KeySnapshot:
        if not rec.has_key:
            return KeySnapshot(usage=0.0, remaining_one_time=rec.one_time_credits)
        try:
            info = self.keys.get_key(rec.openrouter_key_hash)
            usage, limit = info.usage, info.limit
        except KeyServiceError as exc:
            record_key_service_error("get_key")
            if not (allow_fallback and self.fallback_on_read_error):
                raise
            logger.warning(
                "Could not read key %s for user %s, treating usage and limit as 0: %s",
                rec.openrouter_key_hash, rec.user_sub, exc,
            )
            usage, limit = 0.0, 0.0
        return KeySnapshot(usage=usage, remaining_one_time=remaining_one_time(limit, usage, rec, subscription_credits))

    def _apply_limit(self, rec: LedgerRecord, new_limit: float) -> str:
        if rec.has_key:
            try:
                self.keys.update_limit(rec.openrouter_key_hash, new_limit)
            except KeyServiceError:
                record_key_service_error("update_limit")
                raise
            return rec.openrouter_key_hash
        try:
            created = self.keys.create_key(name="Customer Key", label=f"customer-{rec.user_sub}", limit=new_limit)
        except KeyServiceError:
            record_key_service_error("create_key")
            raise
        self.users.set_key(rec.user_sub, created.hash, created.key)
        return created.hash

    def provision(self, user_id: str, credits_to_add: float, is_subscription: bool) -> str:
        if credits_to_add < 0:
            raise ValueError("credits_to_add must be non-negative")
        kind = "subscription" if is_subscription else "one_time"
        with _user_lock(user_id):
            rec = self.users.require(user_id)
            snap = self._snapshot(rec)
            # the subscription share of the old limit is dropped either way;
            # a subscription grant replaces it, a one-time grant stacks on the one-time share
            new_limit = snap.usage + snap.remaining_one_time + credits_to_add
            try:
                key_hash = self._apply_limit(rec, new_limit)
            except KeyServiceError:
                record_provisioning(kind, "error")
                raise

            if is_subscription:
                self.users.set_subscription_credits(user_id, credits_to_add, display_credits(credits_to_add))
            else:
                self.users.add_one_time_credits(rec, credits_to_add, display_credits(credits_to_add))

        record_provisioning(kind, "ok")
        logger.info(
            "Provisioned %s credits (%s) for user %s: key=%s limit=%s",
            credits_to_add, kind, user_id, key_hash, new_limit,
        )
        return key_hash

    def strip_subscription(
        self,
        user_id: str,
        prior_subscription_credits: float,
        status: SubscriptionStatus = SubscriptionStatus.INACTIVE,
    ) -> Optional[str]:
        """Remove an expired subscription allotment from the key's limit.

        ``prior_subscription_credits`` is the allotment held before the
        subscription lapsed. The new ``status`` and the zeroed allotment are
        written in one update after the patch succeeds. A failed key read
        always propagates here; there is no zero-usage fallback.
        """
        with _user_lock(user_id):
            rec = self.users.require(user_id)
            if not rec.has_key:
                self.users.update_subscription(user_id, status=status, openrouter_credits=0, user_credits=0)
                return None
            # evaluate as if still active so the old allotment is subtracted
            as_active = replace(rec, subscription=_active_view(rec.subscription))
            try:
                snap = self._snapshot(as_active, prior_subscription_credits, allow_fallback=False)
                new_limit = snap.usage + snap.remaining_one_time
                key_hash = self._apply_limit(rec, new_limit)
            except KeyServiceError:
                record_provisioning("strip", "error")
                raise
            self.users.update_subscription(user_id, status=status, openrouter_credits=0, user_credits=0)

        record_provisioning("strip", "ok")
        logger.info("Stripped subscription credits for user %s: key=%s limit=%s", user_id, key_hash, new_limit)
        return key_hash


def _active_view(subscription: Dict[str, Any]) -> Dict[str, Any]:
    sub = dict(subscription)
    sub["status"] = "active"
    return sub
