"""Unit tests for settings and error helpers"""
import json
import logging

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError

from dmarc_store.config import Settings
from dmarc_store.exceptions import (
    DuplicateReportError,
    StorageError,
    UnknownDomainError,
    UnknownTagError,
    error_result,
    storage_error_from,
)
from dmarc_store.logging_config import JSONFormatter


@pytest.mark.unit
class TestSettings:
    """Test settings validation"""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.database_dialect is None
        assert settings.report_list_page_size == 25
        assert settings.records_sort_by == "message-count,descent"
        assert settings.fetcher_files_maximum == 0

    @pytest.mark.parametrize("value,expected", [
        ("MySQL", "mariadb"),
        ("mariadb", "mariadb"),
        ("postgres", "pgsql"),
        ("postgresql", "pgsql"),
        ("sqlite", "sqlite"),
        ("", None),
    ])
    def test_dialect_aliases(self, value, expected):
        assert Settings(_env_file=None, database_dialect=value).database_dialect == expected

    def test_unsupported_dialect(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, database_dialect="oracle")

    def test_records_sort(self):
        assert Settings(_env_file=None, records_sort_by="ip, ascent").records_sort_by == "ip,ascent"
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, records_sort_by="count,descent")

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("ALLOWED_DOMAINS", r"\.example\.com$")
        monkeypatch.setenv("REPORT_LIST_PAGE_SIZE", "50")
        settings = Settings(_env_file=None)
        assert settings.allowed_domains == r"\.example\.com$"
        assert settings.report_list_page_size == 50


@pytest.mark.unit
class TestErrors:
    """Test exception helpers"""

    def test_error_result(self):
        result = error_result(UnknownTagError("BOGUS"), filename="report.xml")
        assert result == {
            "error_code": -1,
            "error": "UNKNOWN_TAG",
            "message": "Unknown tag: BOGUS",
            "filename": "report.xml",
        }

    def test_messages(self):
        assert str(DuplicateReportError()) == "This report has already been loaded"
        assert UnknownDomainError("example.net").message == \
            "Failed to add an incoming report: unknown domain example.net"

    def test_storage_error_keeps_cause(self):
        origin = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed"))
        error = storage_error_from(origin, "Failed to insert the report")
        assert isinstance(error, StorageError)
        assert error.message == "Failed to insert the report"
        assert error.__cause__ is origin
        assert error.origin is origin

    def test_connection_error(self):
        origin = OperationalError("SELECT 1", {}, Exception(2003, "Can't connect to MySQL server"))
        error = storage_error_from(origin, "Failed to get the report list")
        assert error.message == "Failed to get the report list: Database connection error"

    def test_access_denied(self):
        origin = OperationalError("SELECT 1", {}, Exception(1045, "Access denied for user"))
        error = storage_error_from(origin, "Failed to get the report list")
        assert error.message == "Failed to get the report list: Database access denied"


@pytest.mark.unit
class TestJSONFormatter:
    """Test structured log output"""

    def test_extra_fields(self):
        record = logging.LogRecord("dmarc_store", logging.INFO, __file__, 10, "Loaded", None, None)
        record.file_name = "report.xml"
        record.report_id = "123456"
        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["message"] == "Loaded"
        assert data["file_name"] == "report.xml"
        assert data["report_id"] == "123456"
        assert "domain" not in data
