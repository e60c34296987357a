"""Runtime configuration read from environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

import voluptuous as vol

from .const import DEFAULT_CACHE_TTL, DEFAULT_HTTP_TIMEOUT, DEFAULT_POLL_INTERVAL

_LOGGER = logging.getLogger(__name__)

CONF_CLIENT_ID = "GOOGLE_CLIENT_ID"
CONF_CLIENT_SECRET = "GOOGLE_CLIENT_SECRET"  # noqa: S105
CONF_REDIRECT_URI = "REDIRECT_URI"
CONF_SESSION_SECRET = "SESSION_SECRET"  # noqa: S105
CONF_PROJECT_ID = "GOOGLE_PROJECT_ID"
CONF_HOST = "HOST"
CONF_PORT = "PORT"
CONF_LOG_LEVEL = "LOG_LEVEL"
CONF_CACHE_TTL = "DEVICE_CACHE_TTL"
CONF_HTTP_TIMEOUT = "HTTP_TIMEOUT"
CONF_POLL_INTERVAL = "POLL_INTERVAL"
CONF_CORS_ORIGINS = "CORS_ORIGINS"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_REQUIRED_STRING = vol.All(vol.Strip, vol.Length(min=1))
_POSITIVE_SECONDS = vol.All(vol.Strip, vol.Coerce(float), vol.Range(min=0, min_included=False))

SETTINGS_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_CLIENT_ID): _REQUIRED_STRING,
        vol.Required(CONF_CLIENT_SECRET): _REQUIRED_STRING,
        vol.Required(CONF_REDIRECT_URI): _REQUIRED_STRING,
        vol.Required(CONF_SESSION_SECRET): _REQUIRED_STRING,
        vol.Required(CONF_PROJECT_ID): _REQUIRED_STRING,
        vol.Optional(CONF_HOST, default="0.0.0.0"): _REQUIRED_STRING,  # noqa: S104
        vol.Optional(CONF_PORT, default="3000"): vol.All(
            vol.Strip, vol.Coerce(int), vol.Range(min=1, max=65535)
        ),
        vol.Optional(CONF_LOG_LEVEL, default="INFO"): vol.All(
            vol.Strip, vol.Upper, vol.In(LOG_LEVELS)
        ),
        vol.Optional(CONF_CACHE_TTL, default=str(DEFAULT_CACHE_TTL)): _POSITIVE_SECONDS,
        vol.Optional(
            CONF_HTTP_TIMEOUT, default=str(DEFAULT_HTTP_TIMEOUT)
        ): _POSITIVE_SECONDS,
        vol.Optional(
            CONF_POLL_INTERVAL, default=str(DEFAULT_POLL_INTERVAL)
        ): _POSITIVE_SECONDS,
        vol.Optional(CONF_CORS_ORIGINS, default="http://localhost:3000"): vol.Strip,
    },
    extra=vol.REMOVE_EXTRA,
)


class ConfigError(Exception):
    """Raised when the environment does not hold a valid configuration."""


@dataclass(frozen=True)
class Settings:
    """Validated backend settings."""

    client_id: str
    client_secret: str
    redirect_uri: str
    session_secret: str
    project_id: str
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3000
    log_level: str = "INFO"
    cache_ttl: float = DEFAULT_CACHE_TTL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables.

        Args:
            environ: Mapping to read, defaults to ``os.environ``.

        Returns:
            The validated settings.

        Raises:
            ConfigError: Listing every missing or invalid variable.

        """
        environ = os.environ if environ is None else environ
        try:
            data = SETTINGS_SCHEMA(dict(environ))
        except vol.MultipleInvalid as err:
            missing = sorted(
                str(error.path[0])
                for error in err.errors
                if error.path and str(error.path[0]) not in environ
            )
            invalid = sorted(
                str(error.path[0])
                for error in err.errors
                if error.path and str(error.path[0]) in environ
            )
            parts = []
            if missing:
                parts.append(
                    f"Missing required environment variables: {', '.join(missing)}"
                )
            if invalid:
                parts.append(f"Invalid environment variables: {', '.join(invalid)}")
            error_msg = ". ".join(parts) or str(err)
            raise ConfigError(error_msg) from err

        origins = tuple(
            origin.strip()
            for origin in data[CONF_CORS_ORIGINS].split(",")
            if origin.strip()
        )
        settings = cls(
            client_id=data[CONF_CLIENT_ID],
            client_secret=data[CONF_CLIENT_SECRET],
            redirect_uri=data[CONF_REDIRECT_URI],
            session_secret=data[CONF_SESSION_SECRET],
            project_id=data[CONF_PROJECT_ID],
            host=data[CONF_HOST],
            port=data[CONF_PORT],
            log_level=data[CONF_LOG_LEVEL],
            cache_ttl=data[CONF_CACHE_TTL],
            http_timeout=data[CONF_HTTP_TIMEOUT],
            poll_interval=data[CONF_POLL_INTERVAL],
            cors_origins=origins,
        )
        _LOGGER.debug(
            "Loaded settings for project %s (redirect %s)",
            settings.project_id,
            settings.redirect_uri,
        )
        return settings
