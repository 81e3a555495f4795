from decimal import Decimal

import pytest

from config import DEFAULT_ROOT_MEMBER_ID, ConfigurationError, Settings


def test_defaults_from_empty_env():
    settings = Settings.from_env({})

    assert settings.store_backend == "memory"
    assert settings.root_member_id == DEFAULT_ROOT_MEMBER_ID
    assert settings.max_children == 3
    assert settings.overflow_policy == "subtree_first"
    assert settings.max_tree_depth is None
    assert settings.psf_amount == Decimal("500")
    assert settings.psf_unit_amount == Decimal("30")
    assert settings.max_distribution_levels is None
    assert settings.retry_attempts == 5


def test_values_read_from_env():
    settings = Settings.from_env(
        {
            "STORE_BACKEND": "Postgres",
            "DATABASE_URL": "postgresql://localhost/mlm",
            "ROOT_MEMBER_ID": " ROOT ",
            "OVERFLOW_POLICY": "global",
            "MAX_TREE_DEPTH": "12",
            "PSF_AMOUNT": "1000",
            "PSF_UNIT_AMOUNT": "25.50",
            "MAX_DISTRIBUTION_LEVELS": "",
            "LOG_LEVEL": "debug",
        }
    )

    assert settings.store_backend == "postgres"
    assert settings.database_url == "postgresql://localhost/mlm"
    assert settings.root_member_id == "ROOT"
    assert settings.overflow_policy == "global"
    assert settings.max_tree_depth == 12
    assert settings.psf_amount == Decimal("1000")
    assert settings.psf_unit_amount == Decimal("25.50")
    assert settings.max_distribution_levels is None
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    "env",
    [
        {"STORE_BACKEND": "redis"},
        {"OVERFLOW_POLICY": "depth_first"},
        {"MAX_CHILDREN": "three"},
        {"MAX_CHILDREN": "0"},
        {"RETRY_ATTEMPTS": "0"},
        {"PSF_AMOUNT": "lots"},
        {"PSF_UNIT_AMOUNT": "-30"},
        {"PSF_AMOUNT": "20", "PSF_UNIT_AMOUNT": "30"},
        {"ROOT_MEMBER_ID": "   "},
    ],
)
def test_bad_values_raise(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)
