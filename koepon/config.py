import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    return int(raw) if raw else None


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    """Process configuration, read once from the environment."""

    database_url: str
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # defaults to db_pool_size
    db_gate_limit: Optional[int] = None
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 128

    # 'pg' | 'tb'
    acct_backend: str = "pg"
    # 'pg' | 'redis'
    paysession_backend: str = "pg"
    # 'memory' | 'redis'
    security_store: str = "memory"
    tb_address: str = "3000"
    tb_cluster_id: int = 0

    # 'mock' | 'stripe'
    payment_provider: str = "mock"
    stripe_secret_key: str = ""
    stripe_publishable_key: str = ""
    stripe_webhook_secret: str = ""
    mock_secret: str = "supersecret"

    jwt_secret: str = "dev-jwt-secret-change-me"
    encryption_key: Optional[str] = None

    reservation_ttl_seconds: int = 5 * 60
    payment_intent_ttl_seconds: int = 24 * 3600
    seed_demo_data: bool = False
    bcrypt_rounds: int = 12
    cors_origins: tuple = field(default_factory=tuple)

    log_level: str = "INFO"
    service_name: str = "koepon"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise ConfigError("DATABASE_URL is required")
        origins = os.environ.get("CORS_ORIGINS", "")
        return cls(
            database_url=database_url,
            db_pool_size=int(os.environ.get("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.environ.get("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(os.environ.get("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=_env_int("DB_GATE_LIMIT"),
            redis_url=os.environ.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(os.environ.get("REDIS_MAX_CONN", "128")),
            acct_backend=os.environ.get("ACCT_BACKEND", "pg").lower(),
            paysession_backend=(
                os.environ.get("PAYSESSION_BACKEND", "pg").lower()
            ),
            security_store=os.environ.get("SECURITY_STORE", "memory").lower(),
            tb_address=os.environ.get("TB_ADDRESS", "3000"),
            tb_cluster_id=int(os.environ.get("TB_CLUSTER_ID", "0")),
            payment_provider=(
                os.environ.get("PAYMENT_PROVIDER", "mock").lower()
            ),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
            stripe_publishable_key=(
                os.environ.get("STRIPE_PUBLISHABLE_KEY")
                or os.environ.get("NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY", "")
            ),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
            mock_secret=os.environ.get("MOCK_SECRET", "supersecret"),
            jwt_secret=os.environ.get(
                "JWT_SECRET", "dev-jwt-secret-change-me"
            ),
            encryption_key=os.environ.get("ENCRYPTION_KEY"),
            reservation_ttl_seconds=int(
                os.environ.get("RESERVATION_TTL_SECONDS", str(5 * 60))
            ),
            seed_demo_data=_env_bool("SEED_DEMO_DATA"),
            bcrypt_rounds=int(os.environ.get("BCRYPT_ROUNDS", "12")),
            cors_origins=tuple(o.strip() for o in origins.split(",")
                               if o.strip()),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            service_name=os.environ.get("SERVICE_NAME", "koepon"),
        )


@dataclass(frozen=True)
class ClientSettings:
    """Configuration of the client-side stores."""

    backend_api_url: str = "http://localhost:8000"
    timeout: float = 10.0
    # keep the last known balance instead of surfacing fetch errors
    medal_fallback_on_error: bool = False

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            backend_api_url=os.environ.get(
                "BACKEND_API_URL", "http://localhost:8000"
            ),
            timeout=float(os.environ.get("BACKEND_API_TIMEOUT", "10")),
            medal_fallback_on_error=_env_bool("MEDAL_FALLBACK_ON_ERROR"),
        )
