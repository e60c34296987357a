"""Pytest configuration and fixtures for dashboard backend tests."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from nest_dashboard.api import RetryPolicy, create_session_client
from nest_dashboard.config import Settings
from nest_dashboard.models import Credential
from nest_dashboard.session import Session, SessionStore

PROJECT_ID = "test-project"
ACCESS_TOKEN = "test-access-token"  # noqa: S105
REFRESH_TOKEN = "test-refresh-token"  # noqa: S105
SESSION_SECRET = "test-session-secret"  # noqa: S105


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def create_thermostat(  # noqa: PLR0913
    device_id: str = "thermo1",
    *,
    mode: str | None = "HEAT",
    heat: float | None = 21.0,
    cool: float | None = None,
    ambient: float | None = 19.5,
    humidity: float | None = 45.0,
    custom_name: str | None = "Living Room",
    available_modes: list[str] | None = None,
    eco: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create a raw SDM thermostat object.

    Any argument set to None leaves the corresponding trait value out.

    """
    traits: dict[str, Any] = {}
    if custom_name is not None:
        traits["sdm.devices.traits.Info"] = {"customName": custom_name}
    if ambient is not None:
        traits["sdm.devices.traits.Temperature"] = {
            "ambientTemperatureCelsius": ambient,
        }
    if humidity is not None:
        traits["sdm.devices.traits.Humidity"] = {"ambientHumidityPercent": humidity}
    if mode is not None:
        traits["sdm.devices.traits.ThermostatMode"] = {
            "mode": mode,
            "availableModes": available_modes or ["HEAT", "COOL", "HEATCOOL", "OFF"],
        }
    setpoint = {}
    if heat is not None:
        setpoint["heatCelsius"] = heat
    if cool is not None:
        setpoint["coolCelsius"] = cool
    if setpoint:
        traits["sdm.devices.traits.ThermostatTemperatureSetpoint"] = setpoint
    if eco is not None:
        traits["sdm.devices.traits.ThermostatEco"] = eco

    return {
        "name": f"enterprises/{PROJECT_ID}/devices/{device_id}",
        "type": "sdm.devices.types.THERMOSTAT",
        "traits": traits,
    }


def create_camera(device_id: str = "camera1") -> dict[str, Any]:
    """Create a raw SDM camera object."""
    return {
        "name": f"enterprises/{PROJECT_ID}/devices/{device_id}",
        "type": "sdm.devices.types.CAMERA",
        "traits": {"sdm.devices.traits.Info": {"customName": "Front Door"}},
    }


@pytest.fixture
def clock() -> FakeClock:
    """Fixture providing a clock frozen at a fixed instant."""
    return FakeClock(datetime(2024, 1, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Fixture providing a retry policy that never sleeps."""
    return RetryPolicy(max_attempts=3, starting_delay=0.0, max_delay=0.01)


@pytest_asyncio.fixture
async def session_client(retry_policy: RetryPolicy) -> AsyncIterator[httpx.AsyncClient]:
    """Fixture providing the retrying HTTP client used in production."""
    async with create_session_client(retry_policy, timeout=5.0) as client:
        yield client


@pytest.fixture
def store(clock: FakeClock) -> SessionStore:
    """Fixture providing an empty session store."""
    return SessionStore(SESSION_SECRET, clock=clock)


@pytest.fixture
def credential(clock: FakeClock) -> Credential:
    """Fixture providing a credential valid for one hour."""
    return Credential(
        access_token=ACCESS_TOKEN,
        refresh_token=REFRESH_TOKEN,
        access_token_expires_at=clock() + timedelta(hours=1),
    )


@pytest.fixture
def authenticated_session(store: SessionStore, credential: Credential) -> Session:
    """Fixture providing a stored session holding a valid credential."""
    session = store.create()
    session.credential = credential
    store.save(session)
    return session


@pytest.fixture
def sample_devices_response() -> dict[str, Any]:
    """Fixture providing a device list with two thermostats and a camera."""
    return {
        "devices": [
            create_thermostat("thermo1"),
            create_camera(),
            create_thermostat(
                "thermo2",
                mode="COOL",
                heat=None,
                cool=24.0,
                custom_name="Bedroom",
            ),
        ],
    }


@pytest.fixture
def sample_token_response() -> dict[str, Any]:
    """Fixture providing a token endpoint response."""
    return {
        "access_token": "new-access-token",
        "expires_in": 3599,
        "token_type": "Bearer",
        "scope": "https://www.googleapis.com/auth/sdm.service",
    }


@pytest.fixture
def settings() -> Settings:
    """Fixture providing backend settings."""
    return Settings(
        client_id="client-id",
        client_secret="client-secret",  # noqa: S106
        redirect_uri="http://localhost:3000/auth/callback",
        session_secret=SESSION_SECRET,
        project_id=PROJECT_ID,
    )
