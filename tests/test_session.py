"""Tests for the session store."""

from datetime import timedelta

from conftest import SESSION_SECRET, FakeClock

from nest_dashboard.models import Credential
from nest_dashboard.session import Session, SessionStore


class TestSessionStore:
    """Tests for SessionStore."""

    def test_create_and_get(self, store: SessionStore) -> None:
        """Test that a created session can be looked up."""
        session = store.create()

        assert session.is_new is True
        assert store.get(session.session_id) is session

    def test_get_unknown_session(self, store: SessionStore) -> None:
        """Test that an unknown id yields None."""
        assert store.get("missing") is None

    def test_sessions_expire_after_max_age(
        self,
        store: SessionStore,
        clock: FakeClock,
    ) -> None:
        """Test that sessions older than a day are gone."""
        session = store.create()
        clock.advance(timedelta(hours=24).total_seconds())

        assert store.get(session.session_id) is None
        assert len(store) == 0

    def test_create_purges_expired_sessions(
        self,
        store: SessionStore,
        clock: FakeClock,
    ) -> None:
        """Test that expired sessions do not accumulate."""
        store.create()
        clock.advance(timedelta(days=2).total_seconds())
        store.create()

        assert len(store) == 1

    def test_destroy_marks_session_and_drops_credential(
        self,
        authenticated_session: Session,
        store: SessionStore,
    ) -> None:
        """Test that a destroyed session is gone and holds no credential."""
        store.destroy(authenticated_session.session_id)

        assert authenticated_session.destroyed is True
        assert authenticated_session.credential is None
        assert store.get(authenticated_session.session_id) is None

    def test_save_ignores_destroyed_sessions(
        self,
        authenticated_session: Session,
        store: SessionStore,
    ) -> None:
        """Test that saving a destroyed session does not resurrect it."""
        store.destroy(authenticated_session.session_id)
        store.save(authenticated_session)

        assert store.get(authenticated_session.session_id) is None

    def test_rotate_moves_state_to_new_id(
        self,
        authenticated_session: Session,
        store: SessionStore,
    ) -> None:
        """Test that rotation keeps the state under a fresh id."""
        authenticated_session.custom_names["thermo1"] = "Hall"
        credential = authenticated_session.credential

        rotated = store.rotate(authenticated_session)

        assert rotated.session_id != authenticated_session.session_id
        assert rotated.credential is credential
        assert rotated.custom_names == {"thermo1": "Hall"}
        assert authenticated_session.destroyed is True


class TestSessionCookieSigning:
    """Tests for signing session ids."""

    def test_sign_and_unsign(self, store: SessionStore) -> None:
        """Test that a signed id is accepted."""
        assert store.unsign(store.sign("abc")) == "abc"

    def test_unsign_rejects_tampered_value(self, store: SessionStore) -> None:
        """Test that a modified id is rejected."""
        signed = store.sign("abc")
        tampered = "abd" + signed[3:]

        assert store.unsign(tampered) is None

    def test_unsign_rejects_other_secret(self, clock: FakeClock) -> None:
        """Test that a cookie signed with another secret is rejected."""
        other = SessionStore("another-secret", clock=clock)
        ours = SessionStore(SESSION_SECRET, clock=clock)

        assert ours.unsign(other.sign("abc")) is None

    def test_unsign_rejects_malformed_values(self, store: SessionStore) -> None:
        """Test that missing or unsigned values are rejected."""
        assert store.unsign(None) is None
        assert store.unsign("") is None
        assert store.unsign("no-signature") is None

    def test_load_resolves_cookie_to_session(self, store: SessionStore) -> None:
        """Test that load returns the live session for a cookie."""
        session = store.create()

        assert store.load(store.sign(session.session_id)) is session


class TestSession:
    """Tests for Session."""

    def test_is_authenticated_requires_usable_credential(
        self,
        store: SessionStore,
        credential: Credential,
    ) -> None:
        """Test the authenticated flag for each credential state."""
        session = store.create()
        assert session.is_authenticated is False

        session.credential = credential
        assert session.is_authenticated is True

        credential.error = "RefreshAccessTokenError"
        assert session.is_authenticated is False
