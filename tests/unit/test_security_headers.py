"""
Unit tests for security headers middleware.

Tests that security headers are added to every response of the
application and that CORS origins are derived from settings.
"""

import pytest


class TestSecurityHeaders:
    """Test security headers middleware adds correct headers."""

    def test_x_content_type_options(self, client):
        """X-Content-Type-Options: nosniff is set."""
        response = client.get("/")
        assert response.headers.get("X-Content-Type-Options") == "nosniff"

    def test_x_frame_options(self, client):
        """X-Frame-Options: DENY is set."""
        response = client.get("/")
        assert response.headers.get("X-Frame-Options") == "DENY"

    def test_referrer_policy(self, client):
        """Referrer-Policy is set."""
        response = client.get("/")
        assert response.headers.get("Referrer-Policy") == "strict-origin-when-cross-origin"

    def test_cache_control(self, client):
        """Cache-Control: no-store is set."""
        response = client.get("/")
        assert response.headers.get("Cache-Control") == "no-store"

    def test_headers_on_api_endpoints(self, client):
        """Security headers present on API endpoints."""
        response = client.get("/api/certificates")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Cache-Control") == "no-store"

    def test_headers_on_error_responses(self, client):
        """Security headers present even on 404 responses."""
        response = client.get("/api/certificate/does-not-exist")
        assert response.status_code == 404
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"


class TestCORSConfiguration:
    """Test CORS origin configuration logic."""

    @pytest.mark.parametrize(
        "debug,origins,expected",
        [
            (True, "", ["*"]),
            (False, "", []),
            (False, "https://app.example.com, https://admin.example.com", ["https://app.example.com", "https://admin.example.com"]),
            (True, "https://only-this.example.com", ["https://only-this.example.com"]),
        ],
    )
    def test_cors_origins(self, app_settings, debug, origins, expected):
        from main import _cors_origins

        settings = app_settings.model_copy(update={"api_debug": debug, "cors_allowed_origins": origins})
        assert _cors_origins(settings) == expected


class TestRequestIds:
    """Test access log correlation ids."""

    def test_generated_request_id(self, client):
        """A request id is generated when none is supplied."""
        response = client.get("/api/certificates")
        assert len(response.headers.get("X-Request-ID", "")) == 16

    def test_supplied_request_id_echoed(self, client):
        """A supplied request id is echoed back."""
        response = client.get("/api/certificates", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"

    def test_access_line_logged(self, client, caplog):
        """Access line carries the principal and id."""
        with caplog.at_level("INFO", logger="cert_manager.access"):
            client.get("/api/certificates", headers={"X-Principal": "ops", "X-Request-ID": "abc"})
        lines = [r.getMessage() for r in caplog.records if r.name == "cert_manager.access"]
        assert any("GET /api/certificates 200" in line and "id=abc" in line and "principal=ops" in line for line in lines)
