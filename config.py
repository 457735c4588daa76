"""
Configuration for the DARRA backend.

Every tunable is read from the environment once, through get_settings(), so the
app module and the entry point never touch os.environ directly.
"""

from dataclasses import dataclass
from functools import lru_cache
import os


@dataclass(frozen=True)
class Settings:
    """Typed view of environment variables."""

    host: str
    port: int
    debug: bool
    data_dir: str
    uploads_dir: str
    jwt_secret_key: str
    jwt_expires_in: int
    cors_origin: str
    autosave_interval: int
    rate_cache_file: str
    rate_provider_url: str
    admin_email: str
    admin_password: str
    log_level: str
    bcrypt_log_rounds: int


@lru_cache
def get_settings() -> Settings:
    """Read the current environment and build a Settings instance."""
    def _int(value: str, default: int = 0) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def _bool(value: str | None, default: bool = False) -> bool:
        if value is None:
            return default
        return value.strip().lower() in {"1", "true", "yes", "on"}

    data_dir = os.getenv("DATA_DIR") or os.path.join(os.getcwd(), "data")
    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_int(os.getenv("PORT", "5000"), 5000),
        debug=_bool(os.getenv("DEBUG"), False),
        data_dir=data_dir,
        uploads_dir=os.getenv("UPLOADS_DIR") or os.path.join(os.getcwd(), "uploads"),
        # A random secret invalidates every token on restart
        jwt_secret_key=os.getenv("JWT_SECRET_KEY") or os.urandom(24).hex(),
        jwt_expires_in=_int(os.getenv("JWT_EXPIRES_IN", "604800"), 604800),
        cors_origin=os.getenv("CORS_ORIGIN", "http://localhost:5173"),
        autosave_interval=_int(os.getenv("AUTOSAVE_INTERVAL", "30"), 30),
        rate_cache_file=os.getenv("RATE_CACHE_FILE") or os.path.join(data_dir, "currency_rates.json"),
        rate_provider_url=os.getenv("RATE_PROVIDER_URL", "").strip(),
        admin_email=(os.getenv("ADMIN_EMAIL") or "admin@darra.com").strip().lower(),
        admin_password=os.getenv("ADMIN_PASSWORD") or "admin123",
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        bcrypt_log_rounds=_int(os.getenv("BCRYPT_LOG_ROUNDS", "12"), 12),
    )
