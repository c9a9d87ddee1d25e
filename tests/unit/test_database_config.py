"""
Unit tests for the Supabase connection helpers.

Run: pytest tests/unit/test_database_config.py -v
"""

from unittest.mock import MagicMock, patch

import pytest

from config.database import check_connection, get_supabase_client
from exceptions import DatabaseError


@pytest.fixture
def supabase_settings():
    fake = MagicMock()
    fake.job_store_backend = "supabase"
    fake.supabase_configured = True
    fake.supabase_url = "https://example.supabase.co"
    fake.supabase_key = "anon-key"
    fake.supabase_service_key = None
    with patch("config.database.settings", fake):
        get_supabase_client.cache_clear()
        yield fake
    get_supabase_client.cache_clear()


class TestGetSupabaseClient:
    """Tests for get_supabase_client"""

    def test_unconfigured_raises_database_error(self, supabase_settings):
        supabase_settings.supabase_configured = False

        with pytest.raises(DatabaseError) as exc_info:
            get_supabase_client()

        assert exc_info.value.code == "DATABASE_ERROR"
        assert exc_info.value.details["operation"] == "connect"

    def test_client_creation_failure_raises_database_error(self, supabase_settings):
        with patch("config.database.create_client", side_effect=ValueError("bad url")):
            with pytest.raises(DatabaseError) as exc_info:
                get_supabase_client()

        assert "bad url" in exc_info.value.message

    def test_client_is_cached(self, supabase_settings):
        with patch("config.database.create_client", return_value=MagicMock()) as create:
            first = get_supabase_client()
            second = get_supabase_client()

        assert first is second
        create.assert_called_once_with("https://example.supabase.co", "anon-key")


class TestCheckConnection:
    """Tests for check_connection"""

    def test_memory_backend_is_healthy(self):
        with patch("config.database.settings") as fake:
            fake.job_store_backend = "memory"

            status = check_connection()

        assert status == {"status": "healthy", "backend": "memory"}

    def test_connection_failure_reports_unhealthy(self, supabase_settings):
        supabase_settings.supabase_configured = False

        status = check_connection()

        assert status["status"] == "unhealthy"
        assert status["backend"] == "supabase"
        assert "not configured" in status["error"]
