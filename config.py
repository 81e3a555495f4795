"""
settings for the referral tree / PSF distribution engine.
values come from the environment, optionally seeded from a .env file.
"""
import os
import sys
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Mapping

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DSN = "dbname=nika user=nika password=secret host=localhost port=5432"

# the company account sits at the top of the tree in production data
DEFAULT_ROOT_MEMBER_ID = "00000000-0000-0000-0000-000000000001"

OVERFLOW_POLICIES = ("subtree_first", "global")
STORE_BACKENDS = ("memory", "postgres")


class ConfigurationError(Exception):
    """invalid or missing configuration value."""


def _int(env: Mapping[str, str], key: str, default: Optional[int], minimum: int = 0) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _decimal(env: Mapping[str, str], key: str, default: str) -> Decimal:
    raw = env.get(key, default)
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{key} must be a decimal amount, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {raw!r}")
    return value


def _choice(env: Mapping[str, str], key: str, default: str, allowed) -> str:
    value = env.get(key, default).strip().lower()
    if value not in allowed:
        raise ConfigurationError(f"{key} must be one of {allowed}, got {value!r}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DSN
    store_backend: str = "memory"
    root_member_id: str = DEFAULT_ROOT_MEMBER_ID
    max_children: int = 3
    overflow_policy: str = "subtree_first"
    max_tree_depth: Optional[int] = None
    psf_amount: Decimal = Decimal("500")
    psf_unit_amount: Decimal = Decimal("30")
    max_distribution_levels: Optional[int] = None
    retry_attempts: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        build settings from `env` (defaults to os.environ after loading .env).
        raises ConfigurationError on bad values.
        """
        if env is None:
            load_dotenv()
            env = os.environ

        settings = cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DSN),
            store_backend=_choice(env, "STORE_BACKEND", "memory", STORE_BACKENDS),
            root_member_id=env.get("ROOT_MEMBER_ID", DEFAULT_ROOT_MEMBER_ID).strip(),
            max_children=_int(env, "MAX_CHILDREN", 3, minimum=1),
            overflow_policy=_choice(env, "OVERFLOW_POLICY", "subtree_first", OVERFLOW_POLICIES),
            max_tree_depth=_int(env, "MAX_TREE_DEPTH", None, minimum=1),
            psf_amount=_decimal(env, "PSF_AMOUNT", "500"),
            psf_unit_amount=_decimal(env, "PSF_UNIT_AMOUNT", "30"),
            max_distribution_levels=_int(env, "MAX_DISTRIBUTION_LEVELS", None, minimum=1),
            retry_attempts=_int(env, "RETRY_ATTEMPTS", 5, minimum=1),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

        if not settings.root_member_id:
            raise ConfigurationError("ROOT_MEMBER_ID cannot be empty")
        if settings.psf_unit_amount > settings.psf_amount:
            raise ConfigurationError(
                f"PSF_UNIT_AMOUNT ({settings.psf_unit_amount}) exceeds PSF_AMOUNT ({settings.psf_amount})"
            )
        return settings


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        logger.info(
            "Loaded settings: backend=%s overflow=%s psf=%s/%s",
            _settings.store_backend,
            _settings.overflow_policy,
            _settings.psf_amount,
            _settings.psf_unit_amount,
        )
    return _settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
