from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field("sqlite:///./commerce_sync.db", alias="DATABASE_URL")
    shopify_api_version: str = Field("2024-10", alias="SHOPIFY_API_VERSION")

    # paging / batching
    page_size: int = 250
    staging_batch_size: int = 200
    staging_sub_batch_size: int = 50
    linker_batch_size: int = 200

    # api client
    http_timeout: float = 30.0
    max_retries: int = 3
    rate_limit_per_second: float = 2.0
    rate_limit_burst: int = 40

    # orchestration
    order_page_delay_ms: int = 300
    product_page_delay_ms: int = 250
    customer_page_delay_ms: int = 250
    incremental_buffer_minutes: int = 2
    due_date_fallback_days: int = 7
    progress_every_pages: int = 3
    max_job_errors: int = 100

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SYNC_",
        populate_by_name=True,
        extra="ignore",
    )


settings = Settings()
