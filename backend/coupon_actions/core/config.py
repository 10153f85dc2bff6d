from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PAYMENT_RECIPIENT = "2KsTX7z6AFR5cMjNuiWmrBSPHPk3F3tb7K5Fw14iek3t"


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore")

    app_name: str = "Coupon Actions API"
    app_version: str = "0.1.0"
    environment: str = "local"
    log_json: bool = False

    database_url: str = "sqlite+aiosqlite:///./coupons.db"
    redis_url: str | None = None

    cors_origins: list[str] = ["*"]

    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    solana_commitment: str = "finalized"
    solana_rpc_timeout_seconds: float = 10.0

    # 0.0058 SOL
    payment_lamports: int = 5_800_000
    payment_recipient: str = DEFAULT_PAYMENT_RECIPIENT

    coupon_expiry_hours: int = 24
    coupon_max_attempts: int = 10

    redemption_require_wallet: bool = True
    redemption_session_ttl_seconds: int = 3600
    reward_url: str = "https://www.helius.dev/"

    telegram_bot_token: str | None = None
    telegram_webhook_secret: str | None = None

    action_title: str = "Generate Coupon"
    action_label: str = "Generate Coupon"
    action_icon_path: str = "/coupon.png"
    action_description: str = (
        "Pay 0.0058 SOL to generate a unique coupon code and redeem it for the report "
        "on our @Dappshuntbot Telegram channel"
    )
    actions_version: str = "2.1.3"
    actions_blockchain_id: str = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"

    sentry_dsn: str | None = None
    sentry_traces_sample_rate: float = 0.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
