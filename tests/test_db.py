# Tests for the session helpers in db.py
from unittest.mock import MagicMock, patch

import pytest

import db


class TestGetDb:
    """Tests for the session generator."""

    def test_yields_session_and_closes_it(self):
        session = MagicMock()
        with patch.object(db, "SessionLocal", return_value=session):
            sessions = db.get_db()
            assert next(sessions) is session
            session.close.assert_not_called()
            sessions.close()

        session.close.assert_called_once()

    def test_closes_when_caller_fails(self):
        session = MagicMock()
        with patch.object(db, "SessionLocal", return_value=session):
            sessions = db.get_db()
            next(sessions)
            with pytest.raises(RuntimeError):
                sessions.throw(RuntimeError("request failed"))

        session.close.assert_called_once()

    def test_engine_uses_configured_url(self):
        # conftest points DATABASE_URL at a throwaway sqlite file
        assert db.DATABASE_URL == "sqlite:///./test.db"
        assert str(db.engine.url) == db.DATABASE_URL
