from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./tasks.db"
    database_echo: bool = False

    # realtime change feed: "memory" (single process) or "redis"
    realtime_backend: str = "memory"
    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 5
    realtime_channel_prefix: str = "todos:"
    realtime_backoff_initial: float = 0.5  # seconds
    realtime_backoff_max: float = 30.0
    # resync resumes on its own if a drag is never ended
    drag_timeout_seconds: float = 10.0

    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    session_ttl_seconds: int = 7 * 24 * 3600
    session_cookie: str = "todo_session"
    cookie_secure: bool = False
    require_email_confirmation: bool = False
    bcrypt_rounds: int = 12

    log_level: str = "INFO"
    log_file: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()
