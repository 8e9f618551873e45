import pytest
import uvicorn
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError, ProgrammingError

from pos_service import __main__ as entry_point
from pos_service.config import Settings
from pos_service.errors import (
    Conflict,
    Internal,
    InvalidRequest,
    NotFound,
    Unavailable,
    from_store_error,
)


class TestStoreErrorMapping:
    def test_integrity_error_is_conflict(self):
        err = from_store_error(IntegrityError("INSERT", {}, Exception("duplicate key")))
        assert isinstance(err, Conflict)
        assert "duplicate key" not in err.message

    def test_data_error_is_invalid_request(self):
        err = from_store_error(DataError("INSERT", {}, Exception("value too long for type")))
        assert isinstance(err, InvalidRequest)
        assert err.status_code == 400
        assert "value too long" not in err.message

    def test_operational_error_is_unavailable(self):
        err = from_store_error(OperationalError("SELECT 1", {}, Exception("server closed")))
        assert isinstance(err, Unavailable)
        assert err.status_code == 503

    def test_invalidated_connection_is_unavailable(self):
        raw = DBAPIError("SELECT 1", {}, Exception("reset"), connection_invalidated=True)
        assert isinstance(from_store_error(raw), Unavailable)

    def test_other_errors_are_internal(self):
        err = from_store_error(ProgrammingError("SELEC", {}, Exception("syntax error")))
        assert isinstance(err, Internal)
        assert err.to_dict() == {
            "error": {"kind": "internal", "message": "unexpected data store error"}
        }

    def test_service_errors_pass_through(self):
        original = NotFound("order 1 not found")
        assert from_store_error(original) is original


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in (
            "DATABASE_URL",
            "REDIS_URL",
            "CHECKOUT_TIMEOUT_SECONDS",
            "CHECKOUT_LINE_SOURCE",
            "DEFAULT_CART_ID",
            "LOG_LEVEL",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.checkout_line_source == "cart"
        assert settings.checkout_timeout_seconds == 5.0
        assert settings.default_cart_id == 1

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///pos.db")
        monkeypatch.setenv("REDIS_URL", "")
        monkeypatch.setenv("CHECKOUT_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("CHECKOUT_LINE_SOURCE", "request")
        monkeypatch.setenv("DEFAULT_CART_ID", "3")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.database_url == "sqlite+aiosqlite:///pos.db"
        assert settings.redis_url is None
        assert settings.checkout_timeout_seconds == 2.5
        assert settings.checkout_line_source == "request"
        assert settings.default_cart_id == 3
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "kwargs", [{"checkout_line_source": "session"}, {"checkout_timeout_seconds": 0}]
    )
    def test_rejects_bad_values(self, kwargs):
        with pytest.raises(ValueError):
            Settings(**kwargs)


def test_entry_point_serves_app_with_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.delenv("HOST", raising=False)
    monkeypatch.setenv("PORT", "9000")

    entry_point.main()

    assert calls == [("pos_service.main:app", {"host": "0.0.0.0", "port": 9000})]
