import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class Settings:
    database_url: str
    concurrency: int = 5
    max_retries: int = 3
    backoff_ms: int = 2000
    poll_interval: float = 1.0
    stall_timeout: float = 300.0
    keep_completed: int = 10
    keep_failed: int = 5
    sandbox_memory_limit: str = "128m"
    sandbox_nano_cpus: int = 500_000_000

    @staticmethod
    def from_env() -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL environment variable not set.")

        return Settings(
            database_url=database_url,
            concurrency=_int_env("GRADING_CONCURRENCY", 5),
            max_retries=_int_env("GRADING_MAX_RETRIES", 3),
            backoff_ms=_int_env("GRADING_BACKOFF_MS", 2000),
            poll_interval=_float_env("GRADING_POLL_INTERVAL", 1.0),
            stall_timeout=_float_env("GRADING_STALL_TIMEOUT", 300.0),
            keep_completed=_int_env("GRADING_KEEP_COMPLETED", 10),
            keep_failed=_int_env("GRADING_KEEP_FAILED", 5),
            sandbox_memory_limit=os.getenv("SANDBOX_MEMORY_LIMIT", "128m"),
            sandbox_nano_cpus=_int_env("SANDBOX_NANO_CPUS", 500_000_000),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt `attempt` (1-based): 2s, 4s, 8s..."""
        return self.backoff_ms * (2 ** (attempt - 1)) / 1000.0
