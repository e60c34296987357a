"""FastAPI application serving the dashboard backend."""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import socketio
import voluptuous as vol
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__, api
from .api import RetryPolicy, create_session_client
from .auth import TokenRefresher
from .cache import DeviceCache
from .const import (
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE,
    SETPOINT_TYPE_COOL,
    SETPOINT_TYPE_HEAT,
    SOCKETIO_PATH,
)
from .errors import AuthRequired, DashboardError, UpstreamError, ValidationError
from .gateway import DeviceGateway
from .models import utcnow
from .realtime import DeviceUpdateBroker, RealtimeServer
from .session import Session, SessionStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    import httpx
    from starlette.responses import Response

    from .config import Settings

_LOGGER = logging.getLogger(__name__)

LOGIN_PATH = "/auth/login"

TEMPERATURE_SCHEMA = vol.Schema(
    {
        vol.Required("temperature"): vol.Coerce(float),
        vol.Optional("type"): vol.Any(
            None, vol.In([SETPOINT_TYPE_HEAT, SETPOINT_TYPE_COOL])
        ),
    },
    extra=vol.REMOVE_EXTRA,
)
MODE_SCHEMA = vol.Schema({vol.Required("mode"): str}, extra=vol.REMOVE_EXTRA)
NAME_SCHEMA = vol.Schema({vol.Required("name"): str}, extra=vol.REMOVE_EXTRA)


@dataclass
class DashboardServices:
    """Long-lived collaborators shared by every request and socket."""

    settings: Settings
    http_client: httpx.AsyncClient
    store: SessionStore
    refresher: TokenRefresher
    cache: DeviceCache
    broker: DeviceUpdateBroker
    gateway: DeviceGateway
    realtime: RealtimeServer

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> DashboardServices:
        """Wire the backend together from settings."""
        retry_policy = retry_policy or RetryPolicy()
        http_client = http_client or create_session_client(
            retry_policy, timeout=settings.http_timeout
        )
        store = SessionStore(settings.session_secret, SESSION_MAX_AGE, utcnow)
        refresher = TokenRefresher(
            http_client,
            store,
            settings.client_id,
            settings.client_secret,
            settings.redirect_uri,
        )
        cache = DeviceCache(settings.cache_ttl)
        broker = DeviceUpdateBroker()
        gateway = DeviceGateway(
            http_client, refresher, cache, store, settings.project_id, broker
        )
        realtime = RealtimeServer(
            gateway,
            store,
            broker,
            poll_interval=settings.poll_interval,
            retry_policy=retry_policy,
            cors_origins=list(settings.cors_origins),
        )
        return cls(
            settings=settings,
            http_client=http_client,
            store=store,
            refresher=refresher,
            cache=cache,
            broker=broker,
            gateway=gateway,
            realtime=realtime,
        )

    async def async_close(self) -> None:
        """Stop sockets and close the shared HTTP client."""
        await self.realtime.async_shutdown()
        await self.http_client.aclose()
        _LOGGER.info("Dashboard services stopped")


class SessionMiddleware(BaseHTTPMiddleware):
    """Attach the server-side session to each request and manage its cookie."""

    def __init__(self, app: Any, store: SessionStore, *, secure: bool = False) -> None:  # noqa: ANN401
        """Initialize the middleware."""
        super().__init__(app)
        self._store = store
        self._secure = secure

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Resolve the session, run the request and sync the cookie."""
        session = self._store.load(request.cookies.get(SESSION_COOKIE_NAME))
        if session is None:
            session = self._store.create()
        request.state.session = session

        response = await call_next(request)

        session = request.state.session
        if session.destroyed:
            response.delete_cookie(SESSION_COOKIE_NAME)
        elif session.is_new:
            response.set_cookie(
                SESSION_COOKIE_NAME,
                self._store.sign(session.session_id),
                max_age=int(SESSION_MAX_AGE.total_seconds()),
                httponly=True,
                samesite="lax",
                secure=self._secure,
            )
            session.is_new = False
        return response


def _services(request: Request) -> DashboardServices:
    return request.app.state.services


def _session(request: Request) -> Session:
    return request.state.session


async def _read_body(request: Request, schema: vol.Schema) -> dict[str, Any]:
    """Parse and validate a JSON request body.

    Raises:
        ValidationError: If the body is not JSON or does not match the schema.

    """
    try:
        body = await request.json()
    except ValueError as err:
        error_msg = "Request body must be JSON."
        raise ValidationError(error_msg) from err
    try:
        return schema(body)
    except vol.Invalid as err:
        error_msg = f"Invalid request body: {err}"
        raise ValidationError(error_msg) from err


def _records(records: list[Any]) -> list[dict[str, Any]]:
    return [record.as_dict() for record in records]


def register_routes(app: FastAPI) -> None:
    """Register the HTTP routes.

    Args:
        app: FastAPI application instance.

    """

    @app.get("/api/auth/status", tags=["Auth"])
    async def auth_status(request: Request) -> JSONResponse:
        """Report whether the session can call the device API."""
        if not _session(request).is_authenticated:
            return JSONResponse(
                {"error": "Not authenticated", "authenticated": False},
                status_code=401,
            )
        return JSONResponse({"authenticated": True, "hasAccessToken": True})

    @app.get(LOGIN_PATH, tags=["Auth"])
    async def login(request: Request) -> RedirectResponse:
        """Start the authorization-code flow."""
        services = _services(request)
        session = _session(request)
        session.clear_credential()
        session.oauth_state = secrets.token_urlsafe(16)
        services.store.save(session)

        _LOGGER.info("Redirecting to OAuth consent page")
        return RedirectResponse(
            api.build_authorization_url(
                services.settings.client_id,
                services.settings.redirect_uri,
                session.oauth_state,
            ),
        )

    @app.get("/auth/callback", tags=["Auth"])
    async def callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
    ) -> RedirectResponse:
        """Finish the authorization-code flow."""
        services = _services(request)
        session = _session(request)
        expected_state = session.oauth_state
        session.oauth_state = None
        services.store.save(session)

        if error:
            _LOGGER.warning("OAuth provider returned an error: %s", error)
            return RedirectResponse(LOGIN_PATH)
        if not code:
            _LOGGER.warning("OAuth callback without an authorization code")
            return RedirectResponse(LOGIN_PATH)
        if not expected_state or not state or not secrets.compare_digest(
            state, expected_state
        ):
            _LOGGER.warning("OAuth callback with a mismatched state")
            return RedirectResponse(LOGIN_PATH)

        try:
            credential = await services.refresher.async_exchange_code(code)
        except AuthRequired:
            _LOGGER.exception("Authorization code exchange failed")
            return RedirectResponse(LOGIN_PATH)

        rotated = services.store.rotate(session)
        rotated.credential = credential
        services.store.save(rotated)
        request.state.session = rotated
        _LOGGER.info("User signed in")
        return RedirectResponse("/")

    @app.get("/auth/logout", tags=["Auth"])
    async def logout(request: Request) -> RedirectResponse:
        """Destroy the session."""
        _services(request).store.destroy(_session(request).session_id)
        _LOGGER.info("User signed out")
        return RedirectResponse(LOGIN_PATH)

    @app.get("/api/devices", tags=["Devices"])
    async def list_devices(request: Request) -> list[dict[str, Any]]:
        """Return every thermostat."""
        gateway = _services(request).gateway
        return _records(await gateway.async_list_devices(_session(request)))

    @app.get("/api/devices/{device_id}", tags=["Devices"])
    async def get_device(request: Request, device_id: str) -> dict[str, Any]:
        """Return one thermostat, read from upstream."""
        gateway = _services(request).gateway
        record = await gateway.async_get_device(_session(request), device_id)
        return record.as_dict()

    @app.get("/api/devices/{device_id}/temperature-history", tags=["Devices"])
    async def temperature_history(
        request: Request,
        device_id: str,
    ) -> list[dict[str, Any]]:
        """Return the last day of temperature readings."""
        gateway = _services(request).gateway
        readings = await gateway.async_get_temperature_history(
            _session(request), device_id
        )
        return [reading.as_dict() for reading in readings]

    @app.post("/api/devices/{device_id}/temperature", tags=["Devices"])
    async def set_temperature(request: Request, device_id: str) -> list[dict[str, Any]]:
        """Change the setpoint and return the refreshed device list."""
        body = await _read_body(request, TEMPERATURE_SCHEMA)
        gateway = _services(request).gateway
        return _records(
            await gateway.async_set_setpoint(
                _session(request), device_id, body["temperature"], body.get("type")
            )
        )

    @app.post("/api/devices/{device_id}/mode", tags=["Devices"])
    async def set_mode(request: Request, device_id: str) -> list[dict[str, Any]]:
        """Change the mode and return the refreshed device list."""
        body = await _read_body(request, MODE_SCHEMA)
        gateway = _services(request).gateway
        return _records(
            await gateway.async_set_mode(_session(request), device_id, body["mode"])
        )

    @app.post("/api/devices/{device_id}/name", tags=["Devices"])
    async def set_name(request: Request, device_id: str) -> list[dict[str, Any]]:
        """Rename a device for this session and return the refreshed list."""
        body = await _read_body(request, NAME_SCHEMA)
        gateway = _services(request).gateway
        return _records(
            await gateway.async_set_name(_session(request), device_id, body["name"])
        )

    @app.api_route(
        "/api/{path:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        include_in_schema=False,
    )
    async def api_not_found(path: str) -> JSONResponse:  # noqa: ARG001
        """Answer unknown API paths with JSON."""
        return JSONResponse({"error": "API endpoint not found"}, status_code=404)

    @app.get("/", include_in_schema=False)
    async def root(request: Request) -> Any:  # noqa: ANN401
        """Send anonymous visitors to login, describe the service otherwise."""
        if not _session(request).is_authenticated:
            return RedirectResponse(LOGIN_PATH)
        return {
            "service": "Nest Thermostat Dashboard",
            "version": __version__,
            "devices": "/api/devices",
            "socket": f"/{SOCKETIO_PATH}",
        }


def register_exception_handlers(app: FastAPI) -> None:
    """Render dashboard errors as structured JSON."""

    @app.exception_handler(DashboardError)
    async def handle_dashboard_error(
        request: Request,
        exc: DashboardError,
    ) -> JSONResponse:
        if exc.requires_reauth:
            session = getattr(request.state, "session", None)
            if session is not None:
                session.clear_credential()
                _services(request).store.save(session)
        _LOGGER.debug(
            "%s %s failed with %s: %s",
            request.method,
            request.url.path,
            exc.code,
            exc.details,
        )
        return JSONResponse(exc.to_payload(), status_code=exc.http_status)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        _LOGGER.error(
            "Unexpected error on %s %s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        error = UpstreamError("Internal server error")
        return JSONResponse(error.to_payload(), status_code=500)


def create_app(
    settings: Settings,
    services: DashboardServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    services = services or DashboardServices.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: ARG001
        _LOGGER.info("Dashboard backend started for project %s", settings.project_id)
        yield
        await services.async_close()

    app = FastAPI(
        title="Nest Thermostat Dashboard",
        description="Backend for a Nest thermostat dashboard",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        SessionMiddleware,
        store=services.store,
        secure=settings.redirect_uri.startswith("https://"),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    register_routes(app)
    return app


def create_asgi_app(settings: Settings) -> socketio.ASGIApp:
    """Combine the HTTP application and the Socket.IO server."""
    services = DashboardServices.build(settings)
    app = create_app(settings, services)
    return socketio.ASGIApp(
        services.realtime.sio,
        other_asgi_app=app,
        socketio_path=SOCKETIO_PATH,
    )
