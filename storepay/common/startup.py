"""Log the effective checkout configuration once at boot, secrets masked."""

from storepay.common.config import CommonSettings
from storepay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "database_url")


def redacted_settings(settings: CommonSettings) -> dict:
    """Settings as a plain dict; secret-looking fields show only whether they are set."""

    values = {}
    for name, value in settings.model_dump().items():
        if any(marker in name for marker in SECRET_MARKERS):
            values[name] = "<set>" if value else "<unset>"
        else:
            values[name] = str(value)
    return values


def log_startup_config(settings: CommonSettings) -> None:
    config = redacted_settings(settings)
    logger.info("startup_config service=%s config=%s", settings.service_name, config)
    if not settings.gateway_api_key or not settings.gateway_secret_key:
        logger.warning("gateway_credentials_missing base_url=%s", settings.gateway_base_url)
