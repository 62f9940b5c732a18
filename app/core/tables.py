from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    users: Any
    stripe_events: Any

T = Tables(
    users=ddb.Table(S.users_table_name),
    stripe_events=ddb.Table(S.stripe_events_table_name),
)
