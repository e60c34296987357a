"""API client for the Google Smart Device Management service.

This module provides functions to interact with the device API and the
OAuth token endpoint, including the retrying HTTP session, response
validation and error classification, and normalization of raw device
payloads into DeviceRecord objects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

import httpx
from httpx_retries import Retry, RetryTransport

from .const import (
    COMMAND_SET_MODE,
    DEFAULT_HTTP_TIMEOUT,
    DEVICE_TYPE_THERMOSTAT,
    MAX_CONNECTIONS,
    OAUTH_AUTHORIZE_URL,
    OAUTH_SCOPES,
    OAUTH_TOKEN_URL,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY,
    RETRY_STARTING_DELAY,
    RETRYABLE_STATUS_CODES,
    SDM_API_BASE,
    TRAIT_HUMIDITY,
    TRAIT_INFO,
    TRAIT_TEMPERATURE,
    TRAIT_THERMOSTAT_ECO,
    TRAIT_THERMOSTAT_MODE,
    TRAIT_THERMOSTAT_SETPOINT,
)
from .errors import (
    AuthExpired,
    ConsentRequired,
    DashboardError,
    PermissionDenied,
    ProjectOrDeviceNotFound,
    RateLimited,
    TransientError,
    UpstreamError,
)
from .models import DeviceRecord, TemperatureReading, ThermostatMode

_LOGGER = logging.getLogger(__name__)

# HTTP status codes
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500

CONSENT_KEYWORDS = ("consent", "permission")

DEFAULT_AVAILABLE_MODES = (
    ThermostatMode.HEAT,
    ThermostatMode.COOL,
    ThermostatMode.ECO,
    ThermostatMode.OFF,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off shared by every retrying call site.

    Attributes:
        max_attempts: Total attempts, including the first one.
        starting_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay.

    """

    max_attempts: int = RETRY_MAX_ATTEMPTS
    starting_delay: float = RETRY_STARTING_DELAY
    max_delay: float = RETRY_MAX_DELAY

    def delay_for(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (zero-based)."""
        return min(self.starting_delay * 2**attempt, self.max_delay)

    def to_retry(self) -> Retry:
        """Build the transport-level retry configuration.

        POST is retried as well as GET: token refreshes and device
        commands are safe to repeat. The transport doubles the factor
        before the first retry, so it is halved to sleep
        ``delay_for(0)``, ``delay_for(1)``, ...
        """
        return Retry(
            total=self.max_attempts - 1,
            allowed_methods=["GET", "POST"],
            status_forcelist=RETRYABLE_STATUS_CODES,
            backoff_factor=self.starting_delay / 2,
            max_backoff_wait=self.max_delay,
            backoff_jitter=0.0,
        )


def create_session_client(
    policy: RetryPolicy | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> httpx.AsyncClient:
    """Create HTTP client with retry logic for the device API.

    Args:
        policy: Retry policy, defaults to three attempts.
        timeout: Hard per-request timeout in seconds.

    Returns:
        Configured httpx AsyncClient with a pooled retry transport.

    """
    policy = policy or RetryPolicy()
    base_transport = httpx.AsyncHTTPTransport(
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=MAX_CONNECTIONS,
        ),
    )
    return httpx.AsyncClient(
        transport=RetryTransport(transport=base_transport, retry=policy.to_retry()),
        timeout=timeout,
    )


def create_headers(access_token: str | None = None) -> dict[str, str]:
    """Create HTTP headers for device API requests.

    Args:
        access_token: Optional OAuth access token sent as a bearer token.

    Returns:
        Dictionary containing HTTP headers for API requests.

    """
    headers = {
        "content-type": "application/json",
        "accept": "application/json",
    }
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def devices_url(project_id: str) -> str:
    """Return the device collection URL for a project."""
    return f"{SDM_API_BASE}/enterprises/{project_id}/devices"


def device_url(project_id: str, device_id: str) -> str:
    """Return the URL of a single device."""
    return f"{devices_url(project_id)}/{device_id}"


def is_http_error(status: int) -> bool:
    """Check if HTTP status code indicates an error.

    Args:
        status: HTTP status code to check.

    Returns:
        True if status code is 400 or higher, False otherwise.

    """
    return status >= HTTP_BAD_REQUEST


def is_consent_error(message: str) -> bool:
    """Check if a 403 message asks for consent or permission to be re-granted."""
    lowered = message.lower()
    return any(keyword in lowered for keyword in CONSENT_KEYWORDS)


def extract_error_message(body: Any) -> str:  # noqa: ANN401
    """Extract a readable message from an upstream error body.

    Google APIs answer ``{"error": {"message": ...}}``, the token endpoint
    answers ``{"error": "invalid_grant", "error_description": ...}``, and
    anything else is returned as text.

    """
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("status") or error)
        if error is not None:
            description = body.get("error_description")
            return f"{error}: {description}" if description else str(error)
        return str(body)
    if body is None:
        return ""
    return str(body)


def classify_error(status: int, body: Any) -> DashboardError:  # noqa: ANN401
    """Map an upstream non-success response onto the error taxonomy.

    Args:
        status: Upstream HTTP status code.
        body: Parsed JSON body, or the raw text when it was not JSON.

    Returns:
        The DashboardError instance to raise.

    """
    message = extract_error_message(body)

    if status == HTTP_UNAUTHORIZED:
        return AuthExpired(
            "Your session has expired. Please sign in again.",
            upstream_status=status,
        )

    if status == HTTP_FORBIDDEN:
        if is_consent_error(message):
            return ConsentRequired(
                "Device access permission has expired. Please sign in again "
                "to grant access to your devices.",
                upstream_status=status,
            )
        return PermissionDenied(
            "The Smart Device Management API may not be enabled or the "
            "project may not have access to Nest devices.",
            upstream_status=status,
        )

    if status == HTTP_NOT_FOUND:
        return ProjectOrDeviceNotFound(
            "The project id or device id was not found upstream.",
            upstream_status=status,
        )

    if status == HTTP_TOO_MANY_REQUESTS:
        return RateLimited(
            "The device API is rate limiting requests. Try again later.",
            upstream_status=status,
        )

    if status >= HTTP_INTERNAL_SERVER_ERROR:
        return TransientError(
            f"Device API unavailable ({status}): {message}",
            upstream_status=status,
            body=body,
        )

    return UpstreamError(
        f"API request failed: {status} {message}",
        upstream_status=status,
        body=body,
    )


def _parse_body(response: httpx.Response) -> Any:  # noqa: ANN401
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return response.text


def validate_response(response: httpx.Response) -> dict[str, Any]:
    """Validate HTTP response and return parsed JSON data.

    Args:
        response: HTTP response object to validate.

    Returns:
        Parsed JSON data from response, an empty dict for an empty body.

    Raises:
        DashboardError: The classified error for any non-success status.

    """
    body = _parse_body(response)

    if is_http_error(response.status_code):
        _LOGGER.warning(
            "Upstream %s %s failed with status %d: %s",
            response.request.method,
            response.request.url,
            response.status_code,
            body,
        )
        raise classify_error(response.status_code, body)

    if not isinstance(body, dict):
        error_msg = f"Unexpected response body: {body!r}"
        raise UpstreamError(error_msg, upstream_status=response.status_code)

    return body


async def async_request(
    session: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    access_token: str | None = None,
    json: dict[str, Any] | None = None,
    data: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Send a request through the retrying session and validate the reply.

    Raises:
        TransientError: If the network kept failing after all retries.
        DashboardError: The classified error for any non-success status.

    """
    headers = create_headers(access_token)
    if data is not None:
        headers["content-type"] = "application/x-www-form-urlencoded"

    try:
        response = await session.request(
            method, url, headers=headers, json=json, data=data
        )
    except httpx.TransportError as err:
        _LOGGER.warning("Connection error for %s %s: %s", method, url, err)
        error_msg = f"Connection error: {err}"
        raise TransientError(error_msg) from err

    return validate_response(response)


def build_authorization_url(client_id: str, redirect_uri: str, state: str) -> str:
    """Return the provider consent URL for the authorization-code flow."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(OAUTH_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    return str(httpx.URL(OAUTH_AUTHORIZE_URL, params=params))


async def async_exchange_code(
    session: httpx.AsyncClient,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    code: str,
) -> dict[str, Any]:
    """Exchange an authorization code for access and refresh tokens.

    Returns:
        Token response containing ``access_token`` and usually
        ``refresh_token`` and ``expires_in``.

    """
    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": redirect_uri,
    }
    _LOGGER.debug("Exchanging authorization code for tokens")
    data = await async_request(session, "POST", OAUTH_TOKEN_URL, data=payload)
    _LOGGER.debug(
        "Token exchange succeeded (refresh_token %s)",
        "present" if data.get("refresh_token") else "missing",
    )
    return data


async def async_refresh_access_token(
    session: httpx.AsyncClient,
    client_id: str,
    client_secret: str,
    refresh_token: str,
) -> dict[str, Any]:
    """Obtain a new access token using the stored refresh token.

    Returns:
        Token response containing ``access_token`` and ``expires_in``.

    """
    payload = {
        "grant_type": "refresh_token",
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": refresh_token,
    }
    _LOGGER.debug("Refreshing access token")
    data = await async_request(session, "POST", OAUTH_TOKEN_URL, data=payload)
    _LOGGER.debug("Access token refreshed, expires_in=%s", data.get("expires_in"))
    return data


async def async_get_devices(
    session: httpx.AsyncClient,
    access_token: str,
    project_id: str,
) -> list[dict[str, Any]]:
    """Fetch the raw device list for a project.

    Returns:
        Raw upstream device objects in upstream order.

    """
    _LOGGER.debug("Fetching devices from device API")
    data = await async_request(
        session, "GET", devices_url(project_id), access_token=access_token
    )
    devices = data.get("devices") or []
    if not isinstance(devices, list):
        _LOGGER.warning("Device list is not an array: %r", devices)
        return []
    _LOGGER.debug("Retrieved %d devices from device API", len(devices))
    return devices


async def async_get_device(
    session: httpx.AsyncClient,
    access_token: str,
    project_id: str,
    device_id: str,
) -> dict[str, Any]:
    """Fetch a single raw device object."""
    _LOGGER.debug("Fetching device %s", device_id)
    return await async_request(
        session, "GET", device_url(project_id, device_id), access_token=access_token
    )


async def async_get_device_states(
    session: httpx.AsyncClient,
    access_token: str,
    project_id: str,
    device_id: str,
) -> list[dict[str, Any]]:
    """Fetch the reported state history of a device."""
    data = await async_request(
        session,
        "GET",
        f"{device_url(project_id, device_id)}/states",
        access_token=access_token,
    )
    states = data.get("states") or []
    return states if isinstance(states, list) else []


async def async_execute_command(
    session: httpx.AsyncClient,
    access_token: str,
    project_id: str,
    device_id: str,
    command: str,
    params: dict[str, Any],
) -> dict[str, Any]:
    """Send a command to a device.

    Args:
        session: HTTP client session.
        access_token: OAuth access token.
        project_id: Device access project id.
        device_id: Target device identifier.
        command: Fully qualified SDM command name.
        params: Command parameters.

    Returns:
        The upstream result, usually an empty dict.

    """
    url = f"{device_url(project_id, device_id)}:executeCommand"
    payload = {"command": command, "params": params}

    _LOGGER.debug("Sending command to device %s: %s %s", device_id, command, params)
    result = await async_request(
        session, "POST", url, access_token=access_token, json=payload
    )
    _LOGGER.debug("Command result for device %s: %s", device_id, result)
    return result


def build_mode_command(mode: ThermostatMode) -> tuple[str, dict[str, Any]]:
    """Return the command and params that switch a thermostat's mode."""
    return COMMAND_SET_MODE, {"mode": mode.value}


def device_id_from_name(name: str) -> str:
    """Return the device id from a resource name like ``enterprises/p/devices/id``."""
    return name.rsplit("/", 1)[-1]


def is_thermostat(device: dict[str, Any]) -> bool:
    """Check if a raw device object is a thermostat."""
    return device.get("type") == DEVICE_TYPE_THERMOSTAT


def _as_float(value: Any) -> float | None:  # noqa: ANN401
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _trait(traits: dict[str, Any], name: str) -> dict[str, Any]:
    trait = traits.get(name)
    return trait if isinstance(trait, dict) else {}


def extract_mode(device: dict[str, Any]) -> ThermostatMode:
    """Return the current thermostat mode of a raw device object."""
    traits = device.get("traits") or {}
    return ThermostatMode.parse(_trait(traits, TRAIT_THERMOSTAT_MODE).get("mode"))


def _extract_target(
    mode: ThermostatMode,
    heat: float | None,
    cool: float | None,
    eco: dict[str, Any],
) -> float | None:
    if mode is ThermostatMode.HEAT:
        return heat
    if mode is ThermostatMode.COOL:
        return cool
    if mode is ThermostatMode.ECO:
        eco_heat = _as_float(eco.get("heatCelsius"))
        return eco_heat if eco_heat is not None else _as_float(eco.get("coolCelsius"))
    return heat if heat is not None else cool


def extract_device_record(
    device: dict[str, Any],
    custom_names: dict[str, str] | None = None,
) -> DeviceRecord:
    """Normalize a raw thermostat object into a DeviceRecord.

    Missing traits never raise; each absent reading becomes ``None``.

    Args:
        device: Raw upstream device object.
        custom_names: Session-scoped display names keyed by device id.

    Returns:
        The normalized DeviceRecord.

    """
    device_id = device_id_from_name(str(device.get("name", "")))
    traits = device.get("traits") or {}

    mode_trait = _trait(traits, TRAIT_THERMOSTAT_MODE)
    setpoint = _trait(traits, TRAIT_THERMOSTAT_SETPOINT)
    mode = ThermostatMode.parse(mode_trait.get("mode"))

    raw_modes = mode_trait.get("availableModes")
    if isinstance(raw_modes, list) and raw_modes:
        available_modes = tuple(ThermostatMode.parse(m) for m in raw_modes)
    else:
        available_modes = DEFAULT_AVAILABLE_MODES

    heat = _as_float(setpoint.get("heatCelsius"))
    cool = _as_float(setpoint.get("coolCelsius"))

    display_name = (
        (custom_names or {}).get(device_id)
        or _trait(traits, TRAIT_INFO).get("customName")
        or device_id
    )

    return DeviceRecord(
        id=device_id,
        display_name=display_name,
        current_temperature_c=_as_float(
            _trait(traits, TRAIT_TEMPERATURE).get("ambientTemperatureCelsius")
        ),
        target_temperature_c=_extract_target(
            mode, heat, cool, _trait(traits, TRAIT_THERMOSTAT_ECO)
        ),
        humidity_percent=_as_float(
            _trait(traits, TRAIT_HUMIDITY).get("ambientHumidityPercent")
        ),
        mode=mode,
        available_modes=available_modes,
        heat_setpoint_c=heat,
        cool_setpoint_c=cool,
    )


def apply_custom_name(
    record: DeviceRecord,
    custom_names: dict[str, str],
) -> DeviceRecord:
    """Return the record renamed with the session's display name, if any."""
    name = custom_names.get(record.id)
    return replace(record, display_name=name) if name else record


def extract_thermostats(
    devices: list[dict[str, Any]] | tuple[dict[str, Any], ...],
    custom_names: dict[str, str] | None = None,
) -> list[DeviceRecord]:
    """Filter raw devices to thermostats and normalize them in upstream order."""
    return [
        extract_device_record(device, custom_names)
        for device in devices
        if is_thermostat(device)
    ]


def _parse_report_time(value: Any) -> datetime | None:  # noqa: ANN401
    if not isinstance(value, str):
        return None
    try:
        timestamp = datetime.fromisoformat(value)
    except ValueError:
        _LOGGER.debug("Ignoring state with invalid reportTime: %s", value)
        return None
    # report times without an offset are UTC
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp


def extract_temperature_history(
    states: list[dict[str, Any]],
    since: datetime,
) -> list[TemperatureReading]:
    """Convert raw state reports into readings newer than ``since``.

    States without a temperature trait or a parseable report time are
    skipped. The result is ordered oldest first.

    """
    readings = []
    for state in states:
        traits = state.get("traits") or {}
        temperature = _as_float(
            _trait(traits, TRAIT_TEMPERATURE).get("ambientTemperatureCelsius")
        )
        timestamp = _parse_report_time(state.get("reportTime"))
        if temperature is None or timestamp is None or timestamp <= since:
            continue
        readings.append(
            TemperatureReading(
                timestamp=timestamp,
                temperature_c=temperature,
                humidity_percent=_as_float(
                    _trait(traits, TRAIT_HUMIDITY).get("ambientHumidityPercent")
                ),
            )
        )
    readings.sort(key=lambda reading: reading.timestamp)
    return readings
