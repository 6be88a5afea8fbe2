from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'whop_user'
    POSTGRES_PASSWORD: str = 'whop_pass'
    POSTGRES_DB: str = 'whop_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Full SQLAlchemy URL, overrides POSTGRES_*

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Session / JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'
    SESSION_TOKEN_EXPIRE_DAYS: int = 7
    SESSION_COOKIE_NAME: str = 'session_token'

    # Rate limiting
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW: int = 60
    # X-Forwarded-For / X-Real-IP solo son fiables detrás de un proxy propio
    TRUST_PROXY_HEADERS: bool = True

    # Pagination
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 100

    # Stripe Connect
    STRIPE_SECRET_KEY: str = ''
    STRIPE_WEBHOOK_SECRET: str = ''
    STRIPE_CONNECT_CLIENT_ID: str = 'ca_placeholder'
    STRIPE_API_VERSION: str = '2025-02-24.acacia'
    STRIPE_CONNECT_COUNTRY: str = 'US'

    # OAuth providers
    GOOGLE_CLIENT_ID: str = ''
    GOOGLE_CLIENT_SECRET: str = ''
    APPLE_CLIENT_ID: str = ''
    APPLE_CLIENT_SECRET: str = ''

    # Outgoing webhooks
    WEBHOOK_MAX_ATTEMPTS: int = 3
    WEBHOOK_TIMEOUT_SECONDS: int = 30
    WEBHOOK_USER_AGENT: str = 'Whop-Webhook/1.0'

    # Email settings
    EMAIL_SMTP_SERVER: str = 'smtp.gmail.com'
    EMAIL_SMTP_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_USERNAME: str = ''
    EMAIL_PASSWORD: str = ''
    EMAIL_FROM: str = ''
    EMAIL_FROM_NAME: str = 'Whop Marketplace'
    BASE_URL: str = 'http://localhost:3000'

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("EMAIL_USE_TLS", "TRUST_PROXY_HEADERS", mode="before")
    @classmethod
    def parse_bool_flags(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("STRIPE_SECRET_KEY")
    @classmethod
    def validate_stripe_secret_key(cls, v):
        if v and not v.startswith("sk_"):
            raise ValueError("Invalid Stripe secret key")
        return v

    @field_validator("STRIPE_WEBHOOK_SECRET")
    @classmethod
    def validate_stripe_webhook_secret(cls, v):
        if v and not v.startswith("whsec_"):
            raise ValueError("Invalid Stripe webhook secret")
        return v

    @field_validator("STRIPE_CONNECT_CLIENT_ID")
    @classmethod
    def validate_stripe_connect_client_id(cls, v):
        if v and not v.startswith("ca_"):
            raise ValueError("Invalid Stripe Connect client ID")
        return v

settings = Settings()
