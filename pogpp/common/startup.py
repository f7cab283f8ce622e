"""Startup checks: redacted config logging and required-setting guards."""

import os

from pogpp.common.config import settings
from pogpp.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")


def _safe_env(name: str) -> str:
    """Return env value with redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def missing_settings(names: list[str]) -> list[str]:
    """Setting names (env style) whose configured value is empty."""

    return [name.upper() for name in names if not getattr(settings, name.lower(), None)]


def require_settings(service_name: str, names: list[str]) -> None:
    """Fail fast when a service starts without collaborator configuration."""

    missing = missing_settings(names)
    if missing:
        logger.error("%s missing required settings: %s", service_name, ", ".join(missing))
        raise RuntimeError(f"{service_name} requires {', '.join(missing)}")
