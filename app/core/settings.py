from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List


def _csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # DynamoDB tables
    users_table_name: str = os.environ.get("USERS_TABLE_NAME", "users")
    users_customer_index: str = os.environ.get("USERS_CUSTOMER_INDEX", "stripe_customer_id-index")
    stripe_events_table_name: str = os.environ.get("STRIPE_EVENTS_TABLE_NAME", "stripe_events")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    stripe_event_ttl_days: int = int(os.environ.get("STRIPE_EVENT_TTL_DAYS", "7"))

    # Firebase ID tokens (auth is pluggable; empty project id enables the dev fallback)
    firebase_project_id: str = os.environ.get("FIREBASE_PROJECT_ID", "")
    firebase_jwks_url: str = os.environ.get(
        "FIREBASE_JWKS_URL",
        "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
    )

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    # OpenRouter key provisioning
    openrouter_provisioning_key: str = os.environ.get("OPENROUTER_PROVISIONING_KEY", "")
    openrouter_base_url: str = os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
    openrouter_timeout_seconds: float = float(os.environ.get("OPENROUTER_TIMEOUT_SECONDS", "10"))
    openrouter_read_fallback: bool = os.environ.get("OPENROUTER_READ_FALLBACK", "1") not in ("0", "false", "False")

    # Credits
    credit_display_multiplier: float = float(os.environ.get("CREDIT_DISPLAY_MULTIPLIER", "3.33"))
    signup_grant_credits: float = float(os.environ.get("SIGNUP_GRANT_CREDITS", "0"))

    # HTTP
    cors_allow_origins: List[str] = field(
        default_factory=lambda: _csv(
            os.environ.get(
                "CORS_ALLOW_ORIGINS",
                "http://localhost:8080,http://localhost:8081,https://agenticbrowser.web.app,https://agenticbrowser.firebaseapp.com",
            )
        )
    )
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")


S = Settings()
