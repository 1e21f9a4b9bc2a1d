# sns_publisher/config.py
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple

from sns_publisher.exceptions import ConfigurationError

# env var names for each platform's OAuth client id / secret
PLATFORM_CREDENTIAL_ENV = {
    "twitter": ("TWITTER_CLIENT_ID", "TWITTER_CLIENT_SECRET"),
    "threads": ("THREADS_APP_ID", "THREADS_APP_SECRET"),
    "facebook": ("FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"),
    "instagram": ("INSTAGRAM_CLIENT_ID", "INSTAGRAM_CLIENT_SECRET"),
}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./sns_publisher.db"
    app_url: str = "http://localhost:3000"
    connect_return_path: str = "/sns"
    credential_key: Optional[str] = None
    cron_secret: Optional[str] = None
    worker_secret: Optional[str] = None
    session_secret: Optional[str] = None
    session_algorithm: str = "HS256"
    oauth_state_ttl_seconds: int = 600
    # expired states are kept this long so a late callback is told it expired
    oauth_state_retention_seconds: int = 86400
    job_lease_ttl_seconds: int = 900
    job_lease_limit: int = 5
    dispatch_concurrency: int = 4
    http_timeout_seconds: float = 30.0
    platform_credentials: Dict[str, Tuple[Optional[str], Optional[str]]] = field(default_factory=dict)

    @property
    def redirect_base(self) -> str:
        return f"{self.app_url.rstrip('/')}{self.connect_return_path}"

    def callback_uri(self, platform: str) -> str:
        return f"{self.app_url.rstrip('/')}/sns/callback/{platform}"

    def client_credentials(self, platform: str) -> Tuple[Optional[str], Optional[str]]:
        return self.platform_credentials.get(platform, (None, None))

    def validate(self) -> None:
        """
        Startup checks. Only the credential key is fatal; the cron and worker
        secrets fail closed at request time instead.
        """
        if not self.credential_key:
            raise ConfigurationError("CREDENTIAL_ENCRYPTION_KEY is not configured")
        if self.job_lease_limit <= 0 or self.dispatch_concurrency <= 0:
            raise ConfigurationError("JOB_LEASE_LIMIT and DISPATCH_CONCURRENCY must be positive")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_settings() -> Settings:
    creds = {
        platform: (os.getenv(id_env), os.getenv(secret_env))
        for platform, (id_env, secret_env) in PLATFORM_CREDENTIAL_ENV.items()
    }
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./sns_publisher.db"),
        app_url=os.getenv("APP_URL", "http://localhost:3000"),
        connect_return_path=os.getenv("CONNECT_RETURN_PATH", "/sns"),
        credential_key=os.getenv("CREDENTIAL_ENCRYPTION_KEY"),
        cron_secret=os.getenv("CRON_SECRET") or None,
        worker_secret=os.getenv("WORKER_SECRET") or None,
        session_secret=os.getenv("SESSION_SECRET") or None,
        session_algorithm=os.getenv("SESSION_ALGORITHM", "HS256"),
        oauth_state_ttl_seconds=_int_env("OAUTH_STATE_TTL_SECONDS", 600),
        oauth_state_retention_seconds=_int_env("OAUTH_STATE_RETENTION_SECONDS", 86400),
        job_lease_ttl_seconds=_int_env("JOB_LEASE_TTL_SECONDS", 900),
        job_lease_limit=_int_env("JOB_LEASE_LIMIT", 5),
        dispatch_concurrency=_int_env("DISPATCH_CONCURRENCY", 4),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
        platform_credentials=creds,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
