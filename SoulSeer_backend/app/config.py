from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8098
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_PATH: str = "soulseer.db"
    SQL_ECHO: bool = False

    # Auth
    AUTH_JWT_SECRET: str = ""
    AUTH_JWT_ALGORITHM: str = "HS256"
    AUTH_USER_HEADERS: str = "x-user-id"
    AUTH_TOKEN_HEADERS: str = "authorization,x-auth-token"

    # Billing
    MIN_BALANCE_MINUTES: int = 3
    READER_SHARE: Decimal = Decimal("0.70")
    MIN_PAYOUT: Decimal = Decimal("15.00")
    MIN_DEPOSIT: Decimal = Decimal("5")
    MAX_DEPOSIT: Decimal = Decimal("1000")
    SINGLE_ACTIVE_SESSION: bool = True
    SWEEP_INTERVAL_SECONDS: int = 15
    DISCONNECT_GRACE_SECONDS: int = 30

    # Payments
    STRIPE_SECRET_KEY: str = ""
    PUBLIC_BASE_URL: str = "http://localhost:5173"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


settings = Settings()
