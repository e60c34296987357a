"""Tests for the realtime broker and Socket.IO server."""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
import socketio

from nest_dashboard.api import RetryPolicy
from nest_dashboard.const import PENDING_KIND_MODE, SESSION_COOKIE_NAME
from nest_dashboard.errors import AuthExpired, TransientError
from nest_dashboard.gateway import DeviceGateway
from nest_dashboard.models import (
    CommandOutcome,
    Credential,
    DeviceRecord,
    DeviceUpdate,
    PendingCommand,
    ThermostatMode,
)
from nest_dashboard.realtime import DeviceUpdateBroker, RealtimeServer
from nest_dashboard.session import Session, SessionStore

SID = "socket-1"
OTHER_SID = "socket-2"


def create_record(device_id: str = "thermo1", target: float = 21.0) -> DeviceRecord:
    """Create a normalized thermostat record."""
    return DeviceRecord(
        id=device_id,
        display_name="Living Room",
        current_temperature_c=19.5,
        target_temperature_c=target,
        humidity_percent=45.0,
        mode=ThermostatMode.HEAT,
        available_modes=(ThermostatMode.HEAT, ThermostatMode.OFF),
        heat_setpoint_c=target,
    )


def create_update(device_id: str = "thermo1", target: float = 21.0) -> DeviceUpdate:
    """Create an update for a device."""
    return DeviceUpdate(device_id=device_id, record=create_record(device_id, target))


def emitted_events(emit: AsyncMock) -> list[str]:
    """Return the names of every emitted event."""
    return [call.args[0] for call in emit.await_args_list]


async def wait_for_event(emit: AsyncMock, event: str, timeout: float = 1.0) -> None:
    """Wait until the server emitted ``event``."""

    async def _wait() -> None:
        while event not in emitted_events(emit):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_wait(), timeout)


class TestDeviceUpdateBroker:
    """Tests for DeviceUpdateBroker and Subscription."""

    @pytest.mark.asyncio
    async def test_publish_delivers_to_device_subscribers(self) -> None:
        """Test that subscribers receive updates for their device only."""
        broker = DeviceUpdateBroker()
        subscription = broker.subscribe("thermo1")

        broker.publish(create_update("thermo2"))
        broker.publish(create_update("thermo1"))

        update = await asyncio.wait_for(anext(subscription), timeout=1)
        assert update.device_id == "thermo1"

    @pytest.mark.asyncio
    async def test_publish_fans_out_to_every_subscriber(self) -> None:
        """Test that two subscriptions to one device both receive updates."""
        broker = DeviceUpdateBroker()
        first = broker.subscribe("thermo1")
        second = broker.subscribe("thermo1")

        broker.publish(create_update())

        assert (await anext(first)).device_id == "thermo1"
        assert (await anext(second)).device_id == "thermo1"

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest_update(self) -> None:
        """Test that a slow consumer only sees the latest updates."""
        broker = DeviceUpdateBroker(queue_size=2)
        subscription = broker.subscribe("thermo1")

        for target in (20.0, 21.0, 22.0):
            broker.publish(create_update(target=target))

        first = await anext(subscription)
        second = await anext(subscription)
        assert [first.record.target_temperature_c, second.record.target_temperature_c] == [
            21.0,
            22.0,
        ]

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self) -> None:
        """Test that closing a subscription stops a waiting consumer."""
        broker = DeviceUpdateBroker()
        subscription = broker.subscribe("thermo1")

        async def consume() -> list[DeviceUpdate]:
            return [update async for update in subscription]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        subscription.close()

        assert await asyncio.wait_for(task, timeout=1) == []
        assert broker.subscriber_count("thermo1") == 0

    @pytest.mark.asyncio
    async def test_closed_subscription_ignores_new_updates(self) -> None:
        """Test that a closed subscription can be replaced by a new one."""
        broker = DeviceUpdateBroker()
        old = broker.subscribe("thermo1")
        old.close()
        new = broker.subscribe("thermo1")

        broker.publish(create_update())

        assert old.closed is True
        assert (await anext(new)).device_id == "thermo1"
        with pytest.raises(StopAsyncIteration):
            await anext(old)

    @pytest.mark.asyncio
    async def test_publish_outcome_targets_session(self) -> None:
        """Test that command outcomes only reach their session."""
        broker = DeviceUpdateBroker()
        mine = broker.subscribe_outcomes("session-a")
        broker.subscribe_outcomes("session-b")
        command = PendingCommand(
            "thermo1", PENDING_KIND_MODE, "COOL", datetime(2024, 1, 1, tzinfo=UTC)
        )

        broker.publish_outcome("session-a", CommandOutcome(command, confirmed=True))

        outcome = await anext(mine)
        assert outcome.confirmed is True


@pytest.fixture
def gateway() -> Mock:
    """Create a mock gateway whose reads succeed."""
    gateway = Mock(spec=DeviceGateway)
    gateway.async_list_devices = AsyncMock(return_value=[])
    gateway.async_get_device = AsyncMock(return_value=create_record())
    return gateway


@pytest_asyncio.fixture
async def server(
    gateway: Mock,
    store: SessionStore,
) -> AsyncIterator[RealtimeServer]:
    """Create a realtime server with Socket.IO I/O mocked out."""
    server = RealtimeServer(
        gateway,
        store,
        DeviceUpdateBroker(),
        poll_interval=3600,
        retry_policy=RetryPolicy(starting_delay=0.0, max_delay=0.0),
    )
    server.sio.emit = AsyncMock()
    server.sio.enter_room = AsyncMock()
    server.sio.leave_room = AsyncMock()
    yield server
    await server.async_shutdown()


def create_environ(store: SessionStore, session: Session) -> dict[str, Any]:
    """Create a handshake environ carrying the session cookie."""
    cookie = store.sign(session.session_id)
    return {"HTTP_COOKIE": f"{SESSION_COOKIE_NAME}={cookie}"}


class TestRealtimeServerConnect:
    """Tests for socket authentication."""

    def test_event_handlers_are_registered(self, server: RealtimeServer) -> None:
        """Test that every Socket.IO event has a handler."""
        handlers = server.sio.handlers["/"]
        for event in (
            "connect",
            "disconnect",
            "subscribe",
            "unsubscribe",
            "get-device-data",
        ):
            assert event in handlers

    @pytest.mark.asyncio
    async def test_anonymous_socket_is_refused(self, server: RealtimeServer) -> None:
        """Test that a socket without a session cookie is refused."""
        with pytest.raises(socketio.exceptions.ConnectionRefusedError):
            await server.async_handle_connect(SID, {})

        assert server.connection_count == 0

    @pytest.mark.asyncio
    async def test_unauthenticated_session_is_refused(
        self,
        server: RealtimeServer,
        store: SessionStore,
    ) -> None:
        """Test that a session without a credential is refused."""
        session = store.create()

        with pytest.raises(socketio.exceptions.ConnectionRefusedError):
            await server.async_handle_connect(SID, create_environ(store, session))

    @pytest.mark.asyncio
    async def test_authenticated_socket_starts_polling(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
        gateway: Mock,
    ) -> None:
        """Test that an authenticated socket is accepted and polled."""
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )
        await asyncio.sleep(0.05)

        assert server.connection_count == 1
        gateway.async_list_devices.assert_awaited_with(authenticated_session)

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
    ) -> None:
        """Test that disconnecting forgets the socket."""
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )

        await server.async_handle_disconnect(SID)

        assert server.connection_count == 0


class TestRealtimeServerSubscriptions:
    """Tests for device subscriptions."""

    @pytest.mark.asyncio
    async def test_subscribe_forwards_device_updates(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
    ) -> None:
        """Test that published updates are emitted to the subscribed socket."""
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )
        await server.async_handle_subscribe(SID, {"deviceId": "thermo1"})

        server._broker.publish(create_update(target=22.0))  # noqa: SLF001
        await wait_for_event(server.sio.emit, "device-thermo1-update")

        server.sio.enter_room.assert_awaited_once_with(SID, "device-thermo1")
        call = next(
            call
            for call in server.sio.emit.await_args_list
            if call.args[0] == "device-thermo1-update"
        )
        assert call.args[1]["targetTemperatureC"] == 22.0  # noqa: PLR2004
        assert call.kwargs["to"] == SID

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_forwarding(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
    ) -> None:
        """Test that no updates are emitted after unsubscribing."""
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )
        await server.async_handle_subscribe(SID, "thermo1")
        await server.async_handle_unsubscribe(SID, "thermo1")

        server._broker.publish(create_update())  # noqa: SLF001
        await asyncio.sleep(0.05)

        server.sio.leave_room.assert_awaited_once_with(SID, "device-thermo1")
        assert "device-thermo1-update" not in emitted_events(server.sio.emit)
        assert server._broker.subscriber_count("thermo1") == 0  # noqa: SLF001

    @pytest.mark.asyncio
    async def test_forwarded_updates_use_each_socket_session_names(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
        credential: Credential,
    ) -> None:
        """Test that every socket sees its own session's names only."""
        other_session = store.create()
        other_session.credential = credential
        authenticated_session.custom_names["thermo1"] = "Private Office"
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )
        await server.async_handle_connect(
            OTHER_SID, create_environ(store, other_session)
        )
        await server.async_handle_subscribe(SID, "thermo1")
        await server.async_handle_subscribe(OTHER_SID, "thermo1")

        server._broker.publish(create_update())  # noqa: SLF001

        def names_by_socket() -> dict[str, str]:
            return {
                call.kwargs["to"]: call.args[1]["name"]
                for call in server.sio.emit.await_args_list
                if call.args[0] == "device-thermo1-update"
            }

        async def _wait() -> None:
            while len(names_by_socket()) < 2:  # noqa: PLR2004
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_wait(), 1.0)
        assert names_by_socket() == {
            SID: "Private Office",
            OTHER_SID: "Living Room",
        }

    @pytest.mark.asyncio
    async def test_get_device_data_replies_with_record(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
    ) -> None:
        """Test that get-device-data answers with the current record."""
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )

        data = await server.async_handle_get_device_data(SID, {"deviceId": "thermo1"})

        assert data["id"] == "thermo1"

    @pytest.mark.asyncio
    async def test_command_outcomes_are_emitted(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
    ) -> None:
        """Test that lost commands are reported to the session's socket."""
        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )
        command = PendingCommand(
            "thermo1", PENDING_KIND_MODE, "COOL", datetime(2024, 1, 1, tzinfo=UTC)
        )

        server._broker.publish_outcome(  # noqa: SLF001
            authenticated_session.session_id,
            CommandOutcome(command, confirmed=False),
        )

        await wait_for_event(server.sio.emit, "command-lost")


class TestRealtimeServerPolling:
    """Tests for the per-socket poll loop."""

    @pytest.mark.asyncio
    async def test_auth_error_emits_auth_required_and_stops(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
        gateway: Mock,
    ) -> None:
        """Test that losing authorization ends polling."""
        gateway.async_list_devices.side_effect = AuthExpired("expired")

        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )
        await wait_for_event(server.sio.emit, "auth-required")
        await asyncio.sleep(0.05)

        assert gateway.async_list_devices.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_backs_off_and_retries(
        self,
        server: RealtimeServer,
        store: SessionStore,
        authenticated_session: Session,
        gateway: Mock,
    ) -> None:
        """Test that a transient failure is retried after a back-off."""
        gateway.async_list_devices.side_effect = [TransientError("down"), []]

        await server.async_handle_connect(
            SID, create_environ(store, authenticated_session)
        )

        async def wait_for_retry() -> None:
            while gateway.async_list_devices.await_count < 2:  # noqa: PLR2004
                await asyncio.sleep(0.01)

        await asyncio.wait_for(wait_for_retry(), timeout=1)
        assert "auth-required" not in emitted_events(server.sio.emit)
