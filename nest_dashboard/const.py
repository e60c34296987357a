"""Constants for the Nest thermostat dashboard.

This module contains all the constants used throughout the backend,
including upstream endpoints, SDM trait and command names, and timing
defaults.
"""

from datetime import timedelta

SDM_API_BASE = "https://smartdevicemanagement.googleapis.com/v1"
OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105

OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/sdm.service",
)

DEVICE_TYPE_THERMOSTAT = "sdm.devices.types.THERMOSTAT"

TRAIT_INFO = "sdm.devices.traits.Info"
TRAIT_TEMPERATURE = "sdm.devices.traits.Temperature"
TRAIT_HUMIDITY = "sdm.devices.traits.Humidity"
TRAIT_THERMOSTAT_MODE = "sdm.devices.traits.ThermostatMode"
TRAIT_THERMOSTAT_ECO = "sdm.devices.traits.ThermostatEco"
TRAIT_THERMOSTAT_SETPOINT = "sdm.devices.traits.ThermostatTemperatureSetpoint"

COMMAND_SET_HEAT = "sdm.devices.commands.ThermostatTemperatureSetpoint.SetHeat"
COMMAND_SET_COOL = "sdm.devices.commands.ThermostatTemperatureSetpoint.SetCool"
COMMAND_SET_MODE = "sdm.devices.commands.ThermostatMode.SetMode"

# Nest hardware bounds, 48F to 90F
MIN_SETPOINT_CELSIUS = 9.0
MAX_SETPOINT_CELSIUS = 32.0
MAX_DISPLAY_NAME_LENGTH = 64

DEFAULT_CACHE_TTL = 5.0
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_TOKEN_LIFETIME = 3600
MAX_CONNECTIONS = 10

RETRY_MAX_ATTEMPTS = 3
RETRY_STARTING_DELAY = 1.0
RETRY_MAX_DELAY = 5.0
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

PENDING_COMMAND_TIMEOUT = timedelta(seconds=30)
TEMPERATURE_HISTORY_WINDOW = timedelta(hours=24)

SESSION_COOKIE_NAME = "nest_dashboard_session"
SESSION_MAX_AGE = timedelta(hours=24)

REFRESH_ERROR = "RefreshAccessTokenError"

SOCKETIO_PATH = "socket.io"
SUBSCRIPTION_QUEUE_SIZE = 16

SETPOINT_TYPE_HEAT = "heat"
SETPOINT_TYPE_COOL = "cool"

PENDING_KIND_HEAT = "heat-setpoint"
PENDING_KIND_COOL = "cool-setpoint"
PENDING_KIND_MODE = "mode"
