"""
Engine settings loaded from the environment
"""
import os
from dataclasses import dataclass
from datetime import timezone, tzinfo

from dotenv import load_dotenv
from zoneinfo import ZoneInfo


def resolve_timezone(name: str) -> tzinfo:
    """Return a tzinfo for a workspace timezone name"""
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


@dataclass
class EngineSettings:
    """Runtime configuration of the flow engine"""
    database_url: str = "sqlite+aiosqlite:///salesbot.db"
    timezone: str = "America/Sao_Paulo"
    max_loop_jumps: int = 50
    lease_ttl_seconds: float = 30.0
    requeue_delay_seconds: float = 1.0
    max_dispatch_retries: int = 5
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_backoff_factor: float = 2.0
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @property
    def tz(self) -> tzinfo:
        return resolve_timezone(self.timezone)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from ``SALESBOT_*`` variables (and a .env file)"""
        load_dotenv()
        defaults = cls()
        return cls(
            database_url=os.getenv("SALESBOT_DATABASE_URL", defaults.database_url),
            timezone=os.getenv("SALESBOT_TIMEZONE", defaults.timezone),
            max_loop_jumps=int(os.getenv("SALESBOT_MAX_LOOP_JUMPS", defaults.max_loop_jumps)),
            lease_ttl_seconds=float(
                os.getenv("SALESBOT_LEASE_TTL_SECONDS", defaults.lease_ttl_seconds)
            ),
            requeue_delay_seconds=float(
                os.getenv("SALESBOT_REQUEUE_DELAY_SECONDS", defaults.requeue_delay_seconds)
            ),
            max_dispatch_retries=int(
                os.getenv("SALESBOT_MAX_DISPATCH_RETRIES", defaults.max_dispatch_retries)
            ),
            retry_initial_delay=float(
                os.getenv("SALESBOT_RETRY_INITIAL_DELAY", defaults.retry_initial_delay)
            ),
            retry_max_delay=float(
                os.getenv("SALESBOT_RETRY_MAX_DELAY", defaults.retry_max_delay)
            ),
            retry_backoff_factor=float(
                os.getenv("SALESBOT_RETRY_BACKOFF_FACTOR", defaults.retry_backoff_factor)
            ),
            api_host=os.getenv("SALESBOT_API_HOST", defaults.api_host),
            api_port=int(os.getenv("SALESBOT_API_PORT", defaults.api_port)),
        )
