from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str
    database_pool_size: int = 5
    database_max_overflow: int = 10
    create_schema: bool = False

    environment: str = "production"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    jwt_secret_key: str | None = None
    jwt_algorithm: str = "HS256"
    keycloak_jwks_uri: str | None = None
    keycloak_issuer_uri: str | None = None

    kafka_bootstrap_servers: str
    kafka_group_id: str = "library-service"
    notifications_topic: str = "user.notifications"
    stock_adjusted_topic: str = "stock.adjusted"
    stock_updated_topic: str = "stock.updated"
    stock_consumer_enabled: bool = True

    max_active_loans: int = 5
    max_extensions: int = 2
    loan_duration_days: int = 14
    late_fee_per_day: Decimal = Decimal("0.50")
    reservation_expiry_hours: int = 48
    reminder_window_hours: int = 24

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


settings = Settings()
