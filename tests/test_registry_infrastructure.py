"""Tests for configuration, identity, logging, error handling and monitoring glue"""

import json
import logging
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from config.base import _coerce_bool, _parse_int
from config.validation import validate_environment
from registry_app.reconcile.principal import Principal, Role, parse_role
from registry_app.utils.error_handler import status_for
from registry_app.utils.logging_config import JSONFormatter, TextFormatter


class TestConfigParsing:
    def test_coerce_bool(self):
        assert _coerce_bool("YES") is True
        assert _coerce_bool("off") is False
        assert _coerce_bool("maybe", default=True) is True
        assert _coerce_bool(None) is False

    def test_parse_int_bounds(self):
        assert _parse_int("250", 10, minimum=1) == 250
        assert _parse_int("0", 10, minimum=1) == 10
        assert _parse_int("abc", 10) == 10
        assert _parse_int(" ", 10) == 10
        assert _parse_int("99999", 10, maximum=1000) == 10


class TestEnvironmentValidation:
    def test_non_production_always_valid(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)

        assert validate_environment("development") == (True, [])

    def test_production_requires_secret_and_database(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "your-secret-key")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("REGISTRY_BLOB_DIR", raising=False)

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert any("SECRET_KEY" in error for error in errors)
        assert any("DATABASE_URL" in error for error in errors)

    def test_production_checks_blob_dir_and_headers(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://registry@db/registry")
        monkeypatch.setenv("REGISTRY_BLOB_DIR", str(tmp_path / "missing" / "deeper"))
        monkeypatch.setenv("REGISTRY_ROLE_HEADER", "   ")

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert any("REGISTRY_BLOB_DIR" in error for error in errors)
        assert any("REGISTRY_ROLE_HEADER" in error for error in errors)

    def test_production_valid_configuration(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://registry@db/registry")
        monkeypatch.setenv("REGISTRY_BLOB_DIR", str(tmp_path))
        monkeypatch.delenv("REGISTRY_PRINCIPAL_HEADER", raising=False)
        monkeypatch.delenv("REGISTRY_ROLE_HEADER", raising=False)

        assert validate_environment("production") == (True, [])


class TestPrincipal:
    def test_role_hierarchy(self):
        admin = Principal("a", Role.ADMIN)
        moderator = Principal("m", Role.MODERATOR)
        member = Principal("u", Role.MEMBER)

        assert admin.satisfies(Role.MODERATOR) and admin.satisfies(Role.MEMBER)
        assert moderator.satisfies(Role.MEMBER) and not moderator.satisfies(Role.ADMIN)
        assert not member.satisfies(Role.MODERATOR)

    def test_parse_role(self):
        assert parse_role(" Moderator ") == Role.MODERATOR
        assert parse_role("root") is None
        assert parse_role(None) is None

    def test_custom_identity_headers(self, app, client):
        app.config.update(REGISTRY_PRINCIPAL_HEADER="X-User", REGISTRY_ROLE_HEADER="X-Role")
        try:
            response = client.get(
                "/api/moderation/stats",
                headers={"X-User": "mod-7", "X-Role": "moderator"},
            )
        finally:
            app.config.update(REGISTRY_PRINCIPAL_HEADER="X-Principal-Id", REGISTRY_ROLE_HEADER="X-Principal-Role")

        assert response.status_code == 200


class TestLoggingFormatters:
    def _record(self, **extra):
        record = logging.LogRecord("registry_app.test", logging.INFO, __file__, 10, "Applied %s", ("batch",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_extra_fields(self):
        payload = json.loads(JSONFormatter("registry").format(self._record(change_source_id=7)))

        assert payload["message"] == "Applied batch"
        assert payload["change_source_id"] == 7
        assert payload["app"] == "registry"
        assert payload["level"] == "INFO"

    def test_text_formatter_appends_extra_fields(self):
        line = TextFormatter().format(self._record(principal_id="admin-1"))

        assert "Applied batch" in line
        assert line.endswith("| principal_id=admin-1")


class TestErrorHandling:
    def test_status_mapping(self):
        from registry_app.reconcile import (
            ConflictError,
            ForbiddenError,
            NotFoundError,
            PersistenceError,
            ValidationError,
        )

        assert status_for(ValidationError("x")) == 422
        assert status_for(ConflictError("x")) == 409
        assert status_for(NotFoundError("x")) == 404
        assert status_for(ForbiddenError("x")) == 403
        assert status_for(PersistenceError("x")) == 500

    def test_unexpected_error_returns_json_500(self, client):
        with patch("registry_app.routes.public.public_stats", side_effect=RuntimeError("boom")):
            response = client.get("/api/stats")

        assert response.status_code == 500
        assert response.get_json() == {"error": "Internal server error.", "kind": "internal", "details": {}}


class TestMonitoring:
    @pytest.fixture
    def monitored(self, app):
        app.config["MONITORING_ENABLED"] = True
        yield app
        app.config["MONITORING_ENABLED"] = False

    def test_health_reports_database_failure(self, monitored, client):
        with patch("registry_app.utils.monitoring.db.session.execute", side_effect=SQLAlchemyError("down")):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.get_json()["status"] == "degraded"
        assert response.get_json()["database"]["ok"] is False
