"""Device gateway: authenticated, cached and normalized device access.

Every read and write from the HTTP surface and the realtime channel goes
through DeviceGateway. It obtains a valid token for the session, reads
through the shared device cache, normalizes upstream payloads and keeps
track of writes that have not been observed yet.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from . import api
from .const import (
    COMMAND_SET_COOL,
    COMMAND_SET_HEAT,
    MAX_DISPLAY_NAME_LENGTH,
    MAX_SETPOINT_CELSIUS,
    MIN_SETPOINT_CELSIUS,
    PENDING_KIND_COOL,
    PENDING_KIND_HEAT,
    PENDING_KIND_MODE,
    SETPOINT_TYPE_COOL,
    SETPOINT_TYPE_HEAT,
    TEMPERATURE_HISTORY_WINDOW,
)
from .errors import InvalidModeError, ProjectOrDeviceNotFound, ValidationError
from .models import (
    CommandOutcome,
    DeviceRecord,
    DeviceUpdate,
    PendingCommand,
    TemperatureReading,
    ThermostatMode,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from .auth import TokenRefresher
    from .cache import DeviceCache
    from .realtime import DeviceUpdateBroker
    from .session import Session, SessionStore

_LOGGER = logging.getLogger(__name__)


def validate_setpoint(value_c: Any) -> float:  # noqa: ANN401
    """Return the setpoint as a float if it is finite and within hardware bounds.

    Raises:
        ValidationError: If the value is not a number or out of range.

    """
    if isinstance(value_c, bool) or not isinstance(value_c, int | float):
        error_msg = "Temperature must be a number."
        raise ValidationError(error_msg)
    value = float(value_c)
    if not math.isfinite(value) or not (
        MIN_SETPOINT_CELSIUS <= value <= MAX_SETPOINT_CELSIUS
    ):
        error_msg = (
            f"Temperature must be between {MIN_SETPOINT_CELSIUS:g} and "
            f"{MAX_SETPOINT_CELSIUS:g} degrees Celsius."
        )
        raise ValidationError(error_msg)
    return value


def validate_mode(mode: Any) -> ThermostatMode:  # noqa: ANN401
    """Return the requested mode if it is a known, settable mode.

    Raises:
        ValidationError: If the mode is missing or unknown.

    """
    if isinstance(mode, ThermostatMode):
        parsed = mode
    elif isinstance(mode, str):
        parsed = ThermostatMode.parse(mode.strip())
    else:
        parsed = ThermostatMode.UNKNOWN
    if parsed is ThermostatMode.UNKNOWN:
        error_msg = f"Invalid mode: {mode!r}"
        raise ValidationError(error_msg)
    return parsed


def validate_display_name(name: Any) -> str:  # noqa: ANN401
    """Return the stripped display name.

    Raises:
        ValidationError: If the name is empty or too long.

    """
    if not isinstance(name, str) or not name.strip():
        error_msg = "Name must be a non-empty string."
        raise ValidationError(error_msg)
    name = name.strip()
    if len(name) > MAX_DISPLAY_NAME_LENGTH:
        error_msg = f"Name must be at most {MAX_DISPLAY_NAME_LENGTH} characters."
        raise ValidationError(error_msg)
    return name


class DeviceGateway:
    """Read and control the thermostats of a device access project."""

    def __init__(
        self,
        session: httpx.AsyncClient,
        refresher: TokenRefresher,
        cache: DeviceCache,
        store: SessionStore,
        project_id: str,
        broker: DeviceUpdateBroker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the gateway.

        Args:
            session: Shared retrying HTTP client.
            refresher: Token refresher for session credentials.
            cache: Process-wide device list cache.
            store: Session store used to persist session changes.
            project_id: Device access project id.
            broker: Optional broker receiving every fresh device reading.
            clock: Source of the current time.

        """
        self._session = session
        self._refresher = refresher
        self._cache = cache
        self._store = store
        self._project_id = project_id
        self._broker = broker
        self._clock = clock

    async def async_list_devices(
        self,
        session: Session,
        *,
        force_refresh: bool = False,
    ) -> list[DeviceRecord]:
        """Return every thermostat of the project, in upstream order.

        Args:
            session: The browser session making the request.
            force_refresh: Bypass the device cache.

        Returns:
            Normalized thermostat records with custom names applied.

        Raises:
            AuthRequired: If no valid token can be obtained.
            DashboardError: The classified upstream failure.

        """
        access_token = await self._refresher.async_get_valid_access_token(session)

        async def fetch() -> list[dict[str, Any]]:
            return await api.async_get_devices(
                self._session, access_token, self._project_id
            )

        raw_devices = await self._cache.async_get_devices(
            fetch, force_refresh=force_refresh
        )
        upstream_records = api.extract_thermostats(raw_devices)
        records = [
            api.apply_custom_name(record, session.custom_names)
            for record in upstream_records
        ]
        _LOGGER.debug("Listing %d thermostats", len(records))

        self._reconcile(session, records)
        self._publish(upstream_records)
        return records

    async def async_get_device(self, session: Session, device_id: str) -> DeviceRecord:
        """Return a single thermostat, always read from upstream.

        Raises:
            ProjectOrDeviceNotFound: If the device is not a thermostat.

        """
        access_token = await self._refresher.async_get_valid_access_token(session)
        device = await api.async_get_device(
            self._session, access_token, self._project_id, device_id
        )
        if not api.is_thermostat(device):
            error_msg = f"Device {device_id} is not a thermostat."
            raise ProjectOrDeviceNotFound(error_msg)

        upstream_record = api.extract_device_record(device)
        record = api.apply_custom_name(upstream_record, session.custom_names)
        self._reconcile(session, [record])
        self._publish([upstream_record])
        return record

    async def async_set_setpoint(
        self,
        session: Session,
        device_id: str,
        value_c: float,
        setpoint_type: str | None = None,
    ) -> list[DeviceRecord]:
        """Change the target temperature of a thermostat.

        The command is chosen by the device's current mode: SetHeat in
        HEAT and SetCool in COOL. A requested type that disagrees with the
        current mode is rejected.

        Args:
            session: The browser session making the request.
            device_id: Target device identifier.
            value_c: New setpoint in degrees Celsius.
            setpoint_type: Optional "heat" or "cool".

        Returns:
            The refreshed device list.

        Raises:
            ValidationError: If the value or type is invalid.
            InvalidModeError: If the current mode does not accept the change.

        """
        value = validate_setpoint(value_c)
        if setpoint_type not in (None, SETPOINT_TYPE_HEAT, SETPOINT_TYPE_COOL):
            error_msg = f"Invalid setpoint type: {setpoint_type!r}"
            raise ValidationError(error_msg)

        access_token = await self._refresher.async_get_valid_access_token(session)
        device = await api.async_get_device(
            self._session, access_token, self._project_id, device_id
        )
        mode = api.extract_mode(device)

        if mode is ThermostatMode.HEAT:
            command, params = COMMAND_SET_HEAT, {"heatCelsius": value}
            kind, mode_type = PENDING_KIND_HEAT, SETPOINT_TYPE_HEAT
        elif mode is ThermostatMode.COOL:
            command, params = COMMAND_SET_COOL, {"coolCelsius": value}
            kind, mode_type = PENDING_KIND_COOL, SETPOINT_TYPE_COOL
        elif mode is ThermostatMode.ECO:
            error_msg = "Cannot change temperature while the thermostat is in ECO mode."
            raise InvalidModeError(error_msg)
        else:
            error_msg = f"Cannot change temperature while the thermostat is {mode}."
            raise InvalidModeError(error_msg)

        if setpoint_type is not None and setpoint_type != mode_type:
            error_msg = (
                f"Cannot set a {setpoint_type} setpoint while the thermostat "
                f"is in {mode} mode."
            )
            raise InvalidModeError(error_msg)

        await api.async_execute_command(
            self._session, access_token, self._project_id, device_id, command, params
        )
        _LOGGER.info("Set %s of %s to %.1f", kind, device_id, value)
        self._record_pending(session, device_id, kind, value)
        return await self._async_refresh_after_write(session)

    async def async_set_mode(
        self,
        session: Session,
        device_id: str,
        mode: ThermostatMode | str,
    ) -> list[DeviceRecord]:
        """Change the operating mode of a thermostat.

        Raises:
            ValidationError: If the mode is unknown.
            InvalidModeError: If the device does not offer the mode.

        """
        requested = validate_mode(mode)

        access_token = await self._refresher.async_get_valid_access_token(session)
        device = await api.async_get_device(
            self._session, access_token, self._project_id, device_id
        )
        record = api.extract_device_record(device, session.custom_names)
        if requested not in record.available_modes:
            error_msg = f"Mode {requested} is not available on this thermostat."
            raise InvalidModeError(error_msg)

        command, params = api.build_mode_command(requested)
        await api.async_execute_command(
            self._session, access_token, self._project_id, device_id, command, params
        )
        _LOGGER.info("Set mode of %s to %s", device_id, requested)
        self._record_pending(session, device_id, PENDING_KIND_MODE, requested.value)
        return await self._async_refresh_after_write(session)

    async def async_set_name(
        self,
        session: Session,
        device_id: str,
        name: str,
    ) -> list[DeviceRecord]:
        """Store a display name for a device in this session."""
        session.custom_names[device_id] = validate_display_name(name)
        self._store.save(session)
        _LOGGER.debug("Renamed %s for session", device_id)
        return await self._async_refresh_after_write(session)

    async def async_get_temperature_history(
        self,
        session: Session,
        device_id: str,
        *,
        window: timedelta = TEMPERATURE_HISTORY_WINDOW,
    ) -> list[TemperatureReading]:
        """Return temperature readings reported within ``window``, oldest first."""
        access_token = await self._refresher.async_get_valid_access_token(session)
        states = await api.async_get_device_states(
            self._session, access_token, self._project_id, device_id
        )
        return api.extract_temperature_history(states, self._clock() - window)

    async def _async_refresh_after_write(self, session: Session) -> list[DeviceRecord]:
        self._cache.invalidate()
        records = await self.async_list_devices(session, force_refresh=True)
        # the read right after a write must still go upstream
        self._cache.invalidate()
        return records

    def _record_pending(
        self,
        session: Session,
        device_id: str,
        kind: str,
        value: float | str,
    ) -> None:
        session.pending_commands[device_id] = PendingCommand(
            device_id=device_id,
            kind=kind,
            requested_value=value,
            issued_at=self._clock(),
        )
        self._store.save(session)

    def _reconcile(
        self,
        session: Session,
        records: list[DeviceRecord],
    ) -> list[CommandOutcome]:
        """Resolve pending commands the records confirm or that have expired."""
        if not session.pending_commands:
            return []

        now = self._clock()
        by_id = {record.id: record for record in records}
        outcomes = []
        for device_id, command in list(session.pending_commands.items()):
            record = by_id.get(device_id)
            if record is not None and command.is_confirmed_by(record):
                outcomes.append(CommandOutcome(command=command, confirmed=True))
            elif command.is_expired(now):
                _LOGGER.warning(
                    "Command %s for %s was not observed in time",
                    command.kind,
                    device_id,
                )
                outcomes.append(CommandOutcome(command=command, confirmed=False))
            else:
                continue
            del session.pending_commands[device_id]

        if outcomes:
            self._store.save(session)
            if self._broker is not None:
                for outcome in outcomes:
                    self._broker.publish_outcome(session.session_id, outcome)
        return outcomes

    def _publish(self, records: list[DeviceRecord]) -> None:
        """Publish records carrying upstream names only."""
        if self._broker is None:
            return
        for record in records:
            self._broker.publish(DeviceUpdate(device_id=record.id, record=record))
