"""OAuth token lifecycle for dashboard sessions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from . import api
from .const import DEFAULT_TOKEN_LIFETIME, REFRESH_ERROR
from .errors import AuthRequired, DashboardError
from .models import Credential, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from .session import Session, SessionStore

_LOGGER = logging.getLogger(__name__)


class TokenRefresher:
    """Keep each session's access token valid, refreshing it when expired."""

    def __init__(
        self,
        session: httpx.AsyncClient,
        store: SessionStore,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the refresher."""
        self._session = session
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._clock = clock

    def _expires_at(self, data: dict[str, Any]) -> datetime:
        expires_in = data.get("expires_in")
        if not isinstance(expires_in, int | float) or isinstance(expires_in, bool):
            expires_in = DEFAULT_TOKEN_LIFETIME
        return self._clock() + timedelta(seconds=expires_in)

    async def async_get_valid_access_token(self, session: Session) -> str:
        """Return an access token for the session, refreshing it if needed.

        Args:
            session: The browser session owning the credential.

        Returns:
            A non-expired access token.

        Raises:
            AuthRequired: If there is no credential, a previous refresh
                failed, or refreshing fails now.

        """
        credential = session.credential
        if credential is None or not credential.access_token:
            error_msg = "No access token available. Please sign in."
            raise AuthRequired(error_msg)

        if credential.error is not None:
            error_msg = "Token refresh failed earlier. Please sign in again."
            raise AuthRequired(error_msg)

        now = self._clock()
        if not credential.is_expired(now):
            return credential.access_token

        if not credential.refresh_token:
            _LOGGER.warning("Access token expired and no refresh token is stored")
            self._mark_failed(session)
            error_msg = "Access token expired. Please sign in again."
            raise AuthRequired(error_msg)

        _LOGGER.debug(
            "Access token expired at %s, refreshing",
            credential.access_token_expires_at.isoformat(),
        )
        try:
            data = await api.async_refresh_access_token(
                self._session,
                self._client_id,
                self._client_secret,
                credential.refresh_token,
            )
        except DashboardError as err:
            _LOGGER.warning("Access token refresh failed: %s", err)
            self._mark_failed(session)
            error_msg = "Unable to refresh access token. Please sign in again."
            raise AuthRequired(error_msg) from err

        access_token = data.get("access_token")
        if not access_token:
            _LOGGER.warning("Token endpoint returned no access token")
            self._mark_failed(session)
            error_msg = "Unable to refresh access token. Please sign in again."
            raise AuthRequired(error_msg)

        credential.access_token = access_token
        credential.access_token_expires_at = self._expires_at(data)
        credential.refresh_token = data.get("refresh_token") or credential.refresh_token
        credential.error = None
        self._store.save(session)

        _LOGGER.info(
            "Refreshed access token, new expiry %s",
            credential.access_token_expires_at.isoformat(),
        )
        return access_token

    def _mark_failed(self, session: Session) -> None:
        if session.credential is not None:
            session.credential.error = REFRESH_ERROR
        self._store.save(session)

    async def async_exchange_code(self, code: str) -> Credential:
        """Exchange an authorization code for a new credential.

        Raises:
            AuthRequired: If the provider rejects the code.

        """
        try:
            data = await api.async_exchange_code(
                self._session,
                self._client_id,
                self._client_secret,
                self._redirect_uri,
                code,
            )
        except DashboardError as err:
            _LOGGER.warning("Authorization code exchange failed: %s", err)
            error_msg = "Unable to complete sign in."
            raise AuthRequired(error_msg) from err

        access_token = data.get("access_token")
        if not access_token:
            error_msg = "Token endpoint returned no access token."
            raise AuthRequired(error_msg)

        return Credential(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            access_token_expires_at=self._expires_at(data),
        )
