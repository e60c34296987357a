"""Realtime device updates over Socket.IO.

This module provides the in-process broker that fans fresh device
readings out to subscribers, and the Socket.IO server that forwards them
to browsers.

The Socket.IO events handled are:
- subscribe: Start receiving ``device-{id}-update`` for a device
- unsubscribe: Stop receiving updates for a device
- get-device-data: Reply with the current record of a device

The events emitted are:
- device-{id}-update: A fresh DeviceRecord for a subscribed device
- command-confirmed / command-lost: Outcome of a pending write
- auth-required: The session can no longer reach the device API
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import socketio
from starlette.requests import cookie_parser

from .api import RetryPolicy, apply_custom_name
from .const import DEFAULT_POLL_INTERVAL, SESSION_COOKIE_NAME, SUBSCRIPTION_QUEUE_SIZE
from .errors import DashboardError, RateLimited, TransientError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .gateway import DeviceGateway
    from .models import CommandOutcome, DeviceUpdate
    from .session import Session, SessionStore

_LOGGER = logging.getLogger(__name__)

_CLOSED = object()


def device_room(device_id: str) -> str:
    """Return the Socket.IO room name for a device."""
    return f"device-{device_id}"


def device_update_event(device_id: str) -> str:
    """Return the event name carrying updates for a device."""
    return f"device-{device_id}-update"


class Subscription:
    """Async iterator over the items published for one key.

    Items are buffered in a bounded queue; when it is full the oldest item
    is dropped so a slow consumer only ever sees the latest readings.
    """

    def __init__(
        self,
        key: str,
        on_close: Callable[[Subscription], None],
        maxsize: int = SUBSCRIPTION_QUEUE_SIZE,
    ) -> None:
        """Initialize the subscription."""
        self.key = key
        self._on_close = on_close
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        """Return True once the subscription has been closed."""
        return self._closed

    def put(self, item: Any) -> None:  # noqa: ANN401
        """Queue an item, dropping the oldest one if the queue is full."""
        if self._closed:
            return
        self._put(item)

    def _put(self, item: Any) -> None:  # noqa: ANN401
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Stop the subscription and end any pending iteration."""
        if self._closed:
            return
        self._closed = True
        self._on_close(self)
        self._put(_CLOSED)

    def __aiter__(self) -> Subscription:
        """Return the iterator itself."""
        return self

    async def __anext__(self) -> Any:  # noqa: ANN401
        """Wait for the next item."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item


class DeviceUpdateBroker:
    """Fan out device updates and command outcomes to subscriptions."""

    def __init__(self, queue_size: int = SUBSCRIPTION_QUEUE_SIZE) -> None:
        """Initialize the broker."""
        self._queue_size = queue_size
        self._device_subscriptions: dict[str, set[Subscription]] = {}
        self._outcome_subscriptions: dict[str, set[Subscription]] = {}

    def _subscribe(
        self,
        registry: dict[str, set[Subscription]],
        key: str,
    ) -> Subscription:
        def unregister(subscription: Subscription) -> None:
            subscriptions = registry.get(key)
            if subscriptions is None:
                return
            subscriptions.discard(subscription)
            if not subscriptions:
                del registry[key]

        subscription = Subscription(key, unregister, self._queue_size)
        registry.setdefault(key, set()).add(subscription)
        return subscription

    def subscribe(self, device_id: str) -> Subscription:
        """Subscribe to the DeviceUpdate items of one device."""
        return self._subscribe(self._device_subscriptions, device_id)

    def subscribe_outcomes(self, session_id: str) -> Subscription:
        """Subscribe to the CommandOutcome items of one session."""
        return self._subscribe(self._outcome_subscriptions, session_id)

    def publish(self, update: DeviceUpdate) -> None:
        """Deliver an update to every open subscription for its device."""
        for subscription in list(self._device_subscriptions.get(update.device_id, ())):
            subscription.put(update)

    def publish_outcome(self, session_id: str, outcome: CommandOutcome) -> None:
        """Deliver a command outcome to the subscriptions of a session."""
        for subscription in list(self._outcome_subscriptions.get(session_id, ())):
            subscription.put(outcome)

    def subscriber_count(self, device_id: str) -> int:
        """Return the number of open subscriptions for a device."""
        return len(self._device_subscriptions.get(device_id, ()))


@dataclass
class _Connection:
    """Per-socket state."""

    sid: str
    session: Session
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    tasks: set[asyncio.Task[None]] = field(default_factory=set)


async def _cancel_task(task: asyncio.Task[None]) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class RealtimeServer:
    """Socket.IO server bridging the broker to browser sockets."""

    def __init__(
        self,
        gateway: DeviceGateway,
        store: SessionStore,
        broker: DeviceUpdateBroker,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_policy: RetryPolicy | None = None,
        cors_origins: list[str] | str = "*",
    ) -> None:
        """Initialize the realtime server.

        Args:
            gateway: Device gateway used for polling and lookups.
            store: Session store used to authenticate sockets.
            broker: Broker the gateway publishes to.
            poll_interval: Seconds between polls of each connection.
            retry_policy: Back-off applied when a poll fails transiently.
            cors_origins: Origins allowed to open a socket.

        """
        self._gateway = gateway
        self._store = store
        self._broker = broker
        self._poll_interval = poll_interval
        self._retry_policy = retry_policy or RetryPolicy()
        self._connections: dict[str, _Connection] = {}
        self.sio = socketio.AsyncServer(
            async_mode="asgi",
            cors_allowed_origins=cors_origins,
            logger=False,
            engineio_logger=False,
        )
        self._register_event_handlers()

    @property
    def connection_count(self) -> int:
        """Return the number of connected sockets."""
        return len(self._connections)

    def _register_event_handlers(self) -> None:
        """Register Socket.IO event handlers."""

        @self.sio.event
        async def connect(
            sid: str,
            environ: dict[str, Any],
            auth: Any = None,  # noqa: ANN401, ARG001
        ) -> None:
            """Handle a new socket, refusing anonymous ones."""
            await self.async_handle_connect(sid, environ)

        @self.sio.event
        async def disconnect(sid: str, reason: Any = None) -> None:  # noqa: ANN401
            """Handle a closed socket."""
            _LOGGER.debug("Socket %s disconnected: %s", sid, reason)
            await self.async_handle_disconnect(sid)

        @self.sio.on("subscribe")
        async def on_subscribe(sid: str, data: Any) -> None:  # noqa: ANN401
            """Handle a subscription request.

            Event format: "deviceId" or { deviceId: "deviceId" }
            """
            await self.async_handle_subscribe(sid, data)

        @self.sio.on("unsubscribe")
        async def on_unsubscribe(sid: str, data: Any) -> None:  # noqa: ANN401
            """Handle an unsubscription request."""
            await self.async_handle_unsubscribe(sid, data)

        @self.sio.on("get-device-data")
        async def on_get_device_data(sid: str, data: Any) -> dict[str, Any]:  # noqa: ANN401
            """Reply with the current record of a device."""
            return await self.async_handle_get_device_data(sid, data)

    def _resolve_session(self, environ: dict[str, Any]) -> Session | None:
        cookies = cookie_parser(environ.get("HTTP_COOKIE", ""))
        session = self._store.load(cookies.get(SESSION_COOKIE_NAME))
        if session is None or not session.is_authenticated:
            return None
        return session

    async def async_handle_connect(self, sid: str, environ: dict[str, Any]) -> None:
        """Authenticate a socket from its session cookie and start polling.

        Raises:
            socketio.exceptions.ConnectionRefusedError: For anonymous sockets.

        """
        session = self._resolve_session(environ)
        if session is None:
            _LOGGER.info("Refusing unauthenticated socket %s", sid)
            message = "Authentication required"
            raise socketio.exceptions.ConnectionRefusedError(message)

        connection = _Connection(sid=sid, session=session)
        self._connections[sid] = connection

        outcomes = self._broker.subscribe_outcomes(session.session_id)
        connection.subscriptions[f"outcomes:{session.session_id}"] = outcomes
        self._start_task(connection, self._forward_outcomes(sid, outcomes))
        self._start_task(connection, self._poll_devices(connection))
        _LOGGER.info("Socket %s connected", sid)

    async def async_handle_disconnect(self, sid: str) -> None:
        """Close every subscription and cancel every task of a socket."""
        connection = self._connections.pop(sid, None)
        if connection is None:
            return
        for subscription in connection.subscriptions.values():
            subscription.close()
        connection.subscriptions.clear()
        for task in list(connection.tasks):
            await _cancel_task(task)
        _LOGGER.debug("Cleaned up socket %s", sid)

    async def async_handle_subscribe(self, sid: str, data: Any) -> None:  # noqa: ANN401
        """Join a device room and forward its updates to the socket."""
        connection = self._connections.get(sid)
        device_id = _extract_device_id(data)
        if connection is None or device_id is None:
            _LOGGER.warning("Invalid subscribe request from %s: %s", sid, data)
            return
        if device_id in connection.subscriptions:
            return

        await self.sio.enter_room(sid, device_room(device_id))
        subscription = self._broker.subscribe(device_id)
        connection.subscriptions[device_id] = subscription
        self._start_task(connection, self._forward_updates(connection, subscription))
        _LOGGER.debug("Socket %s subscribed to %s", sid, device_id)

        try:
            await self._gateway.async_list_devices(connection.session)
        except DashboardError as err:
            await self._handle_poll_error(connection, err)

    async def async_handle_unsubscribe(self, sid: str, data: Any) -> None:  # noqa: ANN401
        """Leave a device room and stop forwarding its updates."""
        connection = self._connections.get(sid)
        device_id = _extract_device_id(data)
        if connection is None or device_id is None:
            return
        subscription = connection.subscriptions.pop(device_id, None)
        if subscription is not None:
            subscription.close()
        await self.sio.leave_room(sid, device_room(device_id))
        _LOGGER.debug("Socket %s unsubscribed from %s", sid, device_id)

    async def async_handle_get_device_data(
        self,
        sid: str,
        data: Any,  # noqa: ANN401
    ) -> dict[str, Any]:
        """Return the current record of a device, or an error payload."""
        connection = self._connections.get(sid)
        device_id = _extract_device_id(data)
        if connection is None or device_id is None:
            return {"error": "ValidationError", "details": "deviceId is required"}
        try:
            record = await self._gateway.async_get_device(connection.session, device_id)
        except DashboardError as err:
            await self._handle_poll_error(connection, err)
            return err.to_payload()
        return record.as_dict()

    def _start_task(self, connection: _Connection, coro: Any) -> None:  # noqa: ANN401
        task = asyncio.create_task(coro)
        connection.tasks.add(task)
        task.add_done_callback(connection.tasks.discard)

    async def _forward_updates(
        self,
        connection: _Connection,
        subscription: Subscription,
    ) -> None:
        async for update in subscription:
            record = apply_custom_name(update.record, connection.session.custom_names)
            await self.sio.emit(
                device_update_event(update.device_id),
                record.as_dict(),
                to=connection.sid,
            )

    async def _forward_outcomes(self, sid: str, subscription: Subscription) -> None:
        async for outcome in subscription:
            event = "command-confirmed" if outcome.confirmed else "command-lost"
            await self.sio.emit(event, outcome.command.as_dict(), to=sid)

    async def _handle_poll_error(
        self,
        connection: _Connection,
        err: DashboardError,
    ) -> bool:
        """Report a failed read; return True if polling must stop."""
        if err.requires_reauth:
            _LOGGER.info("Socket %s needs to sign in again: %s", connection.sid, err)
            await self.sio.emit("auth-required", err.to_payload(), to=connection.sid)
            return True
        _LOGGER.warning("Device poll failed for socket %s: %s", connection.sid, err)
        return False

    async def _poll_devices(self, connection: _Connection) -> None:
        """Poll the device list until the socket goes away or auth is lost."""
        failures = 0
        while True:
            if connection.session.destroyed:
                await self.sio.emit(
                    "auth-required", {"error": "AuthRequired"}, to=connection.sid
                )
                return
            try:
                await self._gateway.async_list_devices(connection.session)
            except (TransientError, RateLimited) as err:
                delay = self._retry_policy.delay_for(failures)
                failures += 1
                _LOGGER.warning(
                    "Device poll failed for socket %s, retrying in %.1fs: %s",
                    connection.sid,
                    delay,
                    err,
                )
                await asyncio.sleep(delay)
                continue
            except DashboardError as err:
                if await self._handle_poll_error(connection, err):
                    return
            failures = 0
            await asyncio.sleep(self._poll_interval)

    async def async_shutdown(self) -> None:
        """Disconnect bookkeeping for every socket."""
        for sid in list(self._connections):
            await self.async_handle_disconnect(sid)


def _extract_device_id(data: Any) -> str | None:  # noqa: ANN401
    if isinstance(data, dict):
        data = data.get("deviceId")
    if isinstance(data, str) and data:
        return data
    return None
