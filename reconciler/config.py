"""
Application configuration management.
"""
from pydantic_settings import BaseSettings
from typing import Optional, List

from reconciler.receipts.models import ReceiptEnvironment


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Subscription Reconciler"
    environment: str = "development"
    debug: bool = False
    log_level: str = "info"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Receipt Validation
    receipt_environment: ReceiptEnvironment = ReceiptEnvironment.SANDBOX
    apple_shared_secret: Optional[str] = None
    bundle_id: Optional[str] = None
    exclude_old_transactions: bool = False
    validation_timeout_seconds: float = 30.0

    # Subscriptions tracked by the verification sweep
    tracked_product_ids: List[str] = [
        "reconciler.sub.monthly",
        "reconciler.sub.yearly",
    ]

    # Receipt source and connectivity
    receipt_path: str = "./data/receipt"
    network_available: bool = True
    cloud_account_available: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
