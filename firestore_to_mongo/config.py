"""
Settings for the migration tools.

Everything is read from the process environment. The CLIs call
``load_environment()`` first so a ``.env`` file in the working directory
(or the one above it) is honoured the same way as exported variables.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

DEFAULT_BATCH_SIZE = 500  # MongoDB accepts far more, keeps progress output readable
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_RETRY_MULTIPLIER = 2.0

DEFAULT_PLAN_FILE = Path(__file__).parent / "migration_plan.yaml"


def load_environment() -> None:
    """Load ``.env`` from the working directory, then from its parent."""
    load_dotenv(Path.cwd() / ".env")
    load_dotenv(Path.cwd().parent / ".env")


@dataclass(frozen=True)
class MongoSettings:
    uri: str
    database: str

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MongoSettings":
        env = os.environ if env is None else env
        uri = (env.get("MONGODB_URI") or "").strip()
        database = (env.get("MONGODB_DB") or "").strip()
        if not uri or not database:
            raise ConfigurationError("Set MONGODB_URI and MONGODB_DB")
        return cls(uri=uri, database=database)


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = DEFAULT_RETRY_ATTEMPTS
    initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    multiplier: float = DEFAULT_RETRY_MULTIPLIER

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RetrySettings":
        env = os.environ if env is None else env
        settings = cls(
            attempts=_int_setting(env, "MIGRATION_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS),
            initial_delay=_float_setting(env, "MIGRATION_RETRY_INITIAL_DELAY", DEFAULT_RETRY_INITIAL_DELAY),
            max_delay=_float_setting(env, "MIGRATION_RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY),
            multiplier=_float_setting(env, "MIGRATION_RETRY_MULTIPLIER", DEFAULT_RETRY_MULTIPLIER),
        )
        if settings.attempts < 1:
            raise ConfigurationError("MIGRATION_RETRY_ATTEMPTS must be at least 1")
        if settings.initial_delay < 0 or settings.max_delay < 0 or settings.multiplier < 1:
            raise ConfigurationError("Retry delays must be >= 0 and the multiplier >= 1")
        return settings


@dataclass(frozen=True)
class MigrationSettings:
    mongo: MongoSettings
    retry: RetrySettings
    batch_size: int = DEFAULT_BATCH_SIZE
    plan_file: Path = DEFAULT_PLAN_FILE

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "MigrationSettings":
        env = os.environ if env is None else env
        batch_size = _int_setting(env, "MIGRATION_BATCH_SIZE", DEFAULT_BATCH_SIZE)
        if batch_size < 1:
            raise ConfigurationError("MIGRATION_BATCH_SIZE must be at least 1")
        plan_file = env.get("MIGRATION_PLAN_FILE")
        return cls(
            mongo=MongoSettings.from_env(env),
            retry=RetrySettings.from_env(env),
            batch_size=batch_size,
            plan_file=Path(plan_file) if plan_file else DEFAULT_PLAN_FILE,
        )


def firestore_database_id(env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    return (env.get("FIRESTORE_DATABASE_ID") or "").strip() or "(default)"


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _float_setting(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
