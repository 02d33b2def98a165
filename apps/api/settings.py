from pydantic_settings import BaseSettings
from pydantic import Field
import os
from pathlib import Path
import dotenv

# Always load apps/.env (relative to this file), regardless of where the process is started.
_APPS_DIR = Path(__file__).resolve().parents[1]
dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=False)


class Settings(BaseSettings):
    APP_HOST: str = Field(default=os.getenv("APP_HOST", "0.0.0.0"))
    APP_PORT: int = Field(default=int(os.getenv("APP_PORT", "8000")))
    APP_RELOAD: bool = Field(default=(os.getenv("APP_RELOAD", "false").strip().lower() == "true"))
    LOG_LEVEL: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    ALERT_WEBHOOK_URL: str = Field(default=os.getenv("ALERT_WEBHOOK_URL", ""))

    # ---------------------------------------------------------------------
    # Billing calendar
    #
    # Every calendar date (due dates, billing dates, period boundaries) is
    # stored as an instant pinned to BILLING_MIDDAY_HOUR in BILLING_TIMEZONE,
    # so converting it to UTC never moves it to a neighbouring day.
    # ---------------------------------------------------------------------
    BILLING_TIMEZONE: str = Field(default=os.getenv("BILLING_TIMEZONE", "America/Sao_Paulo"))
    BILLING_MIDDAY_HOUR: int = Field(default=int(os.getenv("BILLING_MIDDAY_HOUR", "12")))

    # Billing policy
    BILLING_ANCHOR_DAY_MAX: int = Field(default=int(os.getenv("BILLING_ANCHOR_DAY_MAX", "28")))
    BILLING_GRACE_PERIOD_DAYS: int = Field(default=int(os.getenv("BILLING_GRACE_PERIOD_DAYS", "7")))

    # Lifecycle jobs (business-local hours). Overdue detection runs after renewal.
    ENABLE_BILLING_SCHEDULER: bool = Field(
        default=(os.getenv("ENABLE_BILLING_SCHEDULER", "true").strip().lower() == "true")
    )
    BILLING_RENEWAL_HOUR: int = Field(default=int(os.getenv("BILLING_RENEWAL_HOUR", "6")))
    BILLING_OVERDUE_HOUR: int = Field(default=int(os.getenv("BILLING_OVERDUE_HOUR", "9")))

    # Webhook idempotency ledger
    IDEMPOTENCY_TTL_HOURS: int = Field(default=int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24")))
    IDEMPOTENCY_SWEEP_MINUTES: int = Field(default=int(os.getenv("IDEMPOTENCY_SWEEP_MINUTES", "60")))
    # A claim older than this is treated as abandoned by a crashed handler.
    IDEMPOTENCY_CLAIM_TIMEOUT_SECONDS: int = Field(
        default=int(os.getenv("IDEMPOTENCY_CLAIM_TIMEOUT_SECONDS", "300"))
    )

    # Persistence backend for the subscription store and the idempotency ledger: memory | firestore
    BILLING_STORE_BACKEND: str = Field(default=os.getenv("BILLING_STORE_BACKEND", "memory"))
    FIREBASE_CREDENTIALS_PATH: str = Field(
        default=os.getenv("FIREBASE_CREDENTIALS_PATH", str(_APPS_DIR / "serviceAccountKey.json"))
    )

    # Gateway webhooks. An empty secret rejects every delivery for that gateway.
    # Asaas sends the token configured in its dashboard in header: asaas-access-token
    ASAAS_WEBHOOK_TOKEN: str = Field(default=os.getenv("ASAAS_WEBHOOK_TOKEN", ""))
    # AbacatePay signs the raw body with HMAC-SHA256 in header: X-Signature
    ABACATEPAY_WEBHOOK_SECRET: str = Field(default=os.getenv("ABACATEPAY_WEBHOOK_SECRET", ""))

    # Manual job triggers and ledger stats require header: X-Admin-Token
    BILLING_ADMIN_TOKEN: str = Field(default=os.getenv("BILLING_ADMIN_TOKEN", ""))

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
