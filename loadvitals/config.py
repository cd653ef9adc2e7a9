"""
Runtime settings.

Settings that depend on where a run happens (CI runner, developer laptop,
the test suite) live here as configuration classes.  Values are read from
environment variables when the module is imported, with defaults suited
to a local run.  What a run measures (scenario, tiers, policy) is not a
setting; it comes from the run definition file read by
:mod:`loadvitals.loader`.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration with default settings."""

    # Upper bound on browser sessions open at once, across all tiers
    POOL_CEILING: int = int(os.environ.get("LOADVITALS_POOL_CEILING", "8"))

    NAVIGATION_TIMEOUT_MS: float = float(os.environ.get("LOADVITALS_NAV_TIMEOUT_MS", "30000"))
    RUN_DEADLINE_MS: float = float(os.environ.get("LOADVITALS_RUN_DEADLINE_MS", "120000"))

    BROWSER: str = os.environ.get("LOADVITALS_BROWSER", "chromium")
    HEADLESS: bool = _env_bool("LOADVITALS_HEADLESS", True)

    REPORT_DIR: str = os.environ.get("LOADVITALS_REPORT_DIR", "reports")

    # Seconds to wait for the target site before giving up
    HEALTH_TIMEOUT: float = float(os.environ.get("LOADVITALS_HEALTH_TIMEOUT", "60"))
    HEALTH_INTERVAL: float = 1.0

    LOG_LEVEL: str = os.environ.get("LOADVITALS_LOG_LEVEL", "INFO")


class LocalConfig(Config):
    """Developer machine: fewer concurrent sessions."""

    POOL_CEILING: int = int(os.environ.get("LOADVITALS_POOL_CEILING", "4"))


class CIConfig(Config):
    """CI runners: always headless, shorter health wait."""

    HEADLESS: bool = True
    HEALTH_TIMEOUT: float = float(os.environ.get("LOADVITALS_HEALTH_TIMEOUT", "30"))


class TestingConfig(Config):
    """Settings for the package's own test suite."""

    POOL_CEILING: int = 4
    NAVIGATION_TIMEOUT_MS: float = 5000.0
    RUN_DEADLINE_MS: float = 15000.0
    HEADLESS: bool = True
    HEALTH_TIMEOUT: float = 5.0
    HEALTH_INTERVAL: float = 0.1


# Configuration mapping for easy access
config = {
    "local": LocalConfig,
    "ci": CIConfig,
    "testing": TestingConfig,
    "default": LocalConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Get the configuration class for the specified environment.

    Args:
        env: Environment name (local, ci, testing).
             If None, uses the LOADVITALS_ENV environment variable.

    Returns:
        Configuration class for the specified environment.
    """
    if env is None:
        env = os.environ.get("LOADVITALS_ENV", "local")
    return config.get(env, config["default"])
