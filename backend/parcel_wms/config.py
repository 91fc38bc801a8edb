import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables (prefix WMS_)."""

    model_config = SettingsConfigDict(env_prefix="WMS_", env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./parcel_wms.db"
    token_ttl_hours: int = 8

    admin_username: str = "admin"
    admin_password: str = "admin"

    # Counting
    default_location: str = "N/A"
    pending_qc_sku: str = "Pending_QC"
    lpn_prefix: str = "LPN"

    # Outbound
    picking_fee_assumed_qty: int = 10  # picking fee is billed on a fixed item count
    reject_negative_inventory: bool = False

    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
