import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings(BaseModel):
    database_url: str = Field(
        default=os.getenv("DATABASE_URL", "sqlite:///./cidvault.db")
    )
    db_pool_size: int = Field(default=int(os.getenv("DB_POOL_SIZE", "15")))
    db_max_overflow: int = Field(default=int(os.getenv("DB_MAX_OVERFLOW", "20")))
    db_pool_timeout: int = Field(default=int(os.getenv("DB_POOL_TIMEOUT", "30")))
    db_pool_recycle: int = Field(default=int(os.getenv("DB_POOL_RECYCLE", "1800")))

    # Usage metering
    free_tier_gb: Decimal = Field(default=Decimal(os.getenv("FREE_TIER_GB", "5")))
    cost_per_gb_usd: Decimal = Field(default=Decimal(os.getenv("COST_PER_GB_USD", "0.40")))
    usd_to_inr: Decimal = Field(default=Decimal(os.getenv("USD_TO_INR", "83")))
    min_charge_inr: Decimal = Field(default=Decimal(os.getenv("MIN_CHARGE_INR", "1")))
    settlement_currency: str = Field(default=os.getenv("SETTLEMENT_CURRENCY", "INR"))

    # Storage
    default_storage_limit_bytes: int = Field(
        default=int(os.getenv("DEFAULT_STORAGE_LIMIT_BYTES", str(10 * 1024 * 1024 * 1024)))
    )  # 10GB
    max_upload_bytes: int = Field(
        default=int(os.getenv("MAX_UPLOAD_BYTES", str(100 * 1024 * 1024)))
    )  # 100MB

    # Trash
    trash_retention_days: int = Field(default=int(os.getenv("TRASH_RETENTION_DAYS", "30")))
    trash_sweep_interval_seconds: int = Field(
        default=int(os.getenv("TRASH_SWEEP_INTERVAL_SECONDS", "3600"))
    )

    # IPFS (Kubo RPC)
    ipfs_api_url: str = Field(default=os.getenv("IPFS_API_URL", "http://127.0.0.1:5001"))
    ipfs_gateway_url: str = Field(default=os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs"))
    ipfs_timeout_seconds: float = Field(default=float(os.getenv("IPFS_TIMEOUT_SECONDS", "30")))

    # Cashfree
    cashfree_client_id: Optional[str] = Field(default=os.getenv("CASHFREE_CLIENT_ID"))
    cashfree_client_secret: Optional[str] = Field(default=os.getenv("CASHFREE_CLIENT_SECRET"))
    cashfree_env: str = Field(default=os.getenv("CASHFREE_ENV", "sandbox"))
    cashfree_api_version: str = Field(default=os.getenv("CASHFREE_API_VERSION", "2023-08-01"))
    frontend_url: str = Field(default=os.getenv("FRONTEND_URL", "http://localhost:3000"))
    backend_url: str = Field(default=os.getenv("BACKEND_URL", "http://localhost:8000"))

    # Identity tokens
    jwt_secret: Optional[str] = Field(default=os.getenv("JWT_SECRET"))
    jwt_algorithm: str = Field(default=os.getenv("JWT_ALGORITHM", "HS256"))
    jwt_audience: Optional[str] = Field(default=os.getenv("JWT_AUDIENCE"))
    jwt_issuer: Optional[str] = Field(default=os.getenv("JWT_ISSUER"))

    # Per-key locking
    lock_timeout_seconds: float = Field(default=float(os.getenv("LOCK_TIMEOUT_SECONDS", "10")))
    lock_max_attempts: int = Field(default=int(os.getenv("LOCK_MAX_ATTEMPTS", "3")))

    rate_limit_enabled: bool = Field(default=_env_bool("RATE_LIMIT_ENABLED", "true"))
    webhook_rate_limit: str = Field(default=os.getenv("WEBHOOK_RATE_LIMIT", "120/minute"))

    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = Field(default=_env_bool("LOG_JSON", "false"))

    @field_validator("cashfree_env", mode="after")
    @classmethod
    def validate_cashfree_env(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in {"sandbox", "production"}:
            raise ValueError("CASHFREE_ENV must be 'sandbox' or 'production'")
        return value

    def validate_cashfree_config(self) -> None:
        """Validate payment provider credentials when actually needed."""
        if not self.cashfree_client_id or not self.cashfree_client_secret:
            raise ValueError("CASHFREE_CLIENT_ID and CASHFREE_CLIENT_SECRET must be configured")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    class Config:
        frozen = True


settings = Settings()
