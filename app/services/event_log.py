from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import ClientError

from app.core.settings import S
from app.core.tables import T
from app.core.time import now_ts
from app.services.ttl import ttl_in_days, with_ttl

logger = logging.getLogger(__name__)


class ProcessedEvents:
    """Processed Stripe event ids, so redelivered events are applied once."""

    def __init__(self, table: Any, ttl_days: int = 7) -> None:
        self.table = table
        self.ttl_days = ttl_days

    @classmethod
    def from_settings(cls) -> "ProcessedEvents":
        return cls(T.stripe_events, S.stripe_event_ttl_days)

    def claim(self, event_id: str, event_type: str = "") -> bool:
        ts = now_ts()
        try:
            self.table.put_item(
                Item=with_ttl(
                    {"event_id": event_id, "event_type": event_type, "ts": ts},
                    ttl_epoch=ttl_in_days(ts, self.ttl_days),
                ),
                ConditionExpression="attribute_not_exists(event_id)",
            )
            return True
        except ClientError as exc:
            if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise

    def release(self, event_id: str) -> None:
        # lets the gateway's retry reprocess an event whose handling failed
        try:
            self.table.delete_item(Key={"event_id": event_id})
        except ClientError:
            logger.exception("Could not release processed event %s", event_id)
