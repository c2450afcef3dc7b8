import logging
import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = field(default_factory=lambda: os.getenv("API_HOST", "0.0.0.0"))
    api_port: int = field(default_factory=lambda: int(os.getenv("API_PORT", os.getenv("PORT", "5000"))))
    frontend_url: str = field(default_factory=lambda: os.getenv("FRONTEND_URL", "http://localhost:3000"))
    max_body_size: int = field(default_factory=lambda: int(os.getenv("MAX_BODY_SIZE", "10485760")))  # 10MB

    # Database settings
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///library.db"))
    database_pool_size: int = field(default_factory=lambda: int(os.getenv("DATABASE_POOL_SIZE", "5")))

    # Security settings
    jwt_secret_key: str = field(default_factory=lambda: os.getenv(
        "JWT_SECRET",
        os.getenv("JWT_SECRET_KEY", "your-super-secret-jwt-key-change-this-in-production"),
    ))
    jwt_algorithm: str = field(default_factory=lambda: os.getenv("JWT_ALGORITHM", "HS256"))
    jwt_expiration_minutes: int = field(default_factory=lambda: int(os.getenv("JWT_EXPIRATION_MINUTES", "1440")))  # 24h
    bcrypt_rounds: int = field(default_factory=lambda: int(os.getenv("BCRYPT_ROUNDS", "12")))

    # Rate limits (requests per window, window in seconds; limit 0 disables)
    register_rate_limit: int = field(default_factory=lambda: int(os.getenv("REGISTER_RATE_LIMIT", "5")))
    register_rate_window: int = field(default_factory=lambda: int(os.getenv("REGISTER_RATE_WINDOW", "3600")))
    login_rate_limit: int = field(default_factory=lambda: int(os.getenv("LOGIN_RATE_LIMIT", "5")))
    login_rate_window: int = field(default_factory=lambda: int(os.getenv("LOGIN_RATE_WINDOW", "900")))
    # Only trust X-Forwarded-For when a reverse proxy sets it
    trust_proxy: bool = field(default_factory=lambda: _env_bool("TRUST_PROXY"))

    # Lending rules
    loan_period_days: int = field(default_factory=lambda: int(os.getenv("LOAN_PERIOD_DAYS", "14")))
    daily_fine_rate: float = field(default_factory=lambda: float(os.getenv("DAILY_FINE_RATE", "1.0")))

    # Pagination
    default_page_size: int = field(default_factory=lambda: int(os.getenv("DEFAULT_PAGE_SIZE", "10")))
    max_page_size: int = field(default_factory=lambda: int(os.getenv("MAX_PAGE_SIZE", "100")))

    # Application settings
    app_name: str = field(default_factory=lambda: os.getenv("APP_NAME", "Library App Backend"))
    app_version: str = field(default_factory=lambda: os.getenv("APP_VERSION", "1.0.0"))
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development")))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    @property
    def database_path(self) -> str:
        """Filesystem path of the SQLite database named by ``database_url``."""
        url = self.database_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):]
        if url.startswith("sqlite://"):
            return url[len("sqlite://"):] or ":memory:"
        return url

    @property
    def token_lifetime_seconds(self) -> int:
        return self.jwt_expiration_minutes * 60

    def override(self, **changes) -> "Settings":
        """Return a copy with some fields replaced (handy in tests)."""
        data = {name: getattr(self, name) for name in self.__dataclass_fields__}
        data.update(changes)
        return Settings(**data)


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
