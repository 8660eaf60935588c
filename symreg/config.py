import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./symreg.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None

    # 'mock' | 'razorpay'
    gateway: str = "mock"
    gateway_key_id: str = "rzp_test_dev"
    gateway_key_secret: str = "dev-key-secret-change-me"
    gateway_webhook_secret: str = "dev-webhook-secret-change-me"
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout: float = 5.0

    # per head, major units (e.g. INR)
    entry_fee: float = 250.0
    currency: str = "INR"
    pass_gateway_fees_to_payer: bool = True
    gateway_fee_rate: float = 0.02
    tax_rate: float = 0.18

    admin_api_key: Optional[str] = None
    mock_webhook_url: str = "http://localhost:8000/api/v1/payments/webhook"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get(
                "DATABASE_URL", "sqlite:///./symreg.db"
            ),
            db_pool_size=int(os.environ.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.environ.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.environ.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=(
                int(os.environ["DB_GATE_LIMIT"])
                if os.environ.get("DB_GATE_LIMIT") else None
            ),
            gateway=os.environ.get("GATEWAY", "mock").lower(),
            gateway_key_id=os.environ.get("GATEWAY_KEY_ID", "rzp_test_dev"),
            gateway_key_secret=os.environ.get(
                "GATEWAY_KEY_SECRET", "dev-key-secret-change-me"
            ),
            gateway_webhook_secret=os.environ.get(
                "GATEWAY_WEBHOOK_SECRET", "dev-webhook-secret-change-me"
            ),
            gateway_base_url=os.environ.get(
                "GATEWAY_BASE_URL", "https://api.razorpay.com/v1"
            ),
            gateway_timeout=float(os.environ.get("GATEWAY_TIMEOUT", "5.0")),
            entry_fee=float(os.environ.get("ENTRY_FEE", "250")),
            currency=os.environ.get("CURRENCY", "INR").upper(),
            pass_gateway_fees_to_payer=_env_bool(
                "PASS_GATEWAY_FEES_TO_PAYER", "true"
            ),
            gateway_fee_rate=float(os.environ.get("GATEWAY_FEE_RATE", "0.02")),
            tax_rate=float(os.environ.get("TAX_RATE", "0.18")),
            admin_api_key=os.environ.get("ADMIN_API_KEY") or None,
            mock_webhook_url=os.environ.get(
                "MOCK_WEBHOOK_URL",
                "http://localhost:8000/api/v1/payments/webhook",
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
