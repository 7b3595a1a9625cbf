"""
Tests for URL validation, content-type gating and caller identity.
"""
import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.security import is_url_allowed, is_content_type_allowed, get_user_from_request


class _FakeRequest:
    def __init__(self, headers=None, query_params=None):
        self.headers = headers or {}
        self.query_params = query_params or {}


class TestUrlValidation:
    """Test SSRF protection on proxied URLs."""

    @pytest.mark.parametrize("url", [
        "https://archive.org/download/item/file.mp4",
        "https://ia600206.us.archive.org/29/items/file.mp4",
        "https://example.com/video.webm",
        "https://cdn.example.com:8443/a/b/c.mp3?token=abc",
    ])
    def test_allows_public_https(self, url):
        """Well-formed https URLs with public hostnames are allowed."""
        assert is_url_allowed(url) is True

    @pytest.mark.parametrize("url", [
        "http://example.com/video.mp4",
        "ftp://example.com/video.mp4",
        "file:///etc/passwd",
        "data:text/html,<script>alert(1)</script>",
    ])
    def test_rejects_non_https(self, url):
        """Only https is proxied."""
        assert is_url_allowed(url) is False

    @pytest.mark.parametrize("url", [
        "https://127.0.0.1/video.mp4",
        "https://127.0.0.42/video.mp4",
        "https://10.0.0.1/video.mp4",
        "https://10.255.255.255/video.mp4",
        "https://172.16.0.1/video.mp4",
        "https://172.31.255.255/video.mp4",
        "https://192.168.0.1/video.mp4",
        "https://192.168.255.255/video.mp4",
        "https://0.0.0.0/video.mp4",
        "https://[::1]/video.mp4",
        "https://2130706433/video.mp4",
        "https://0x7f.0.0.1/video.mp4",
        "https://0177.0.0.1/video.mp4",
        "https://127.1/video.mp4",
        "https://167772161/video.mp4",
        "https://[0:0:0:0:0:0:0:1]/video.mp4",
        "https://[::ffff:127.0.0.1]/video.mp4",
        "https://localhost./video.mp4",
    ])
    def test_rejects_private_and_loopback(self, url):
        """Loopback and private ranges are blocked."""
        assert is_url_allowed(url) is False

    def test_allows_non_private_172(self):
        """172.x outside 16-31 is public."""
        assert is_url_allowed("https://172.15.0.1/video.mp4") is True
        assert is_url_allowed("https://172.32.0.1/video.mp4") is True

    def test_allows_public_ip_literals(self):
        """Public addresses are allowed in any spelling."""
        assert is_url_allowed("https://93.184.216.34/video.mp4") is True
        assert is_url_allowed("https://[2606:2800:220:1::1]/video.mp4") is True
        assert is_url_allowed("https://0x5db8d822/video.mp4") is True

    def test_rejects_localhost(self):
        """localhost is blocked with or without a port."""
        assert is_url_allowed("https://localhost/video.mp4") is False
        assert is_url_allowed("https://localhost:3000/video.mp4") is False
        assert is_url_allowed("https://LOCALHOST/video.mp4") is False

    @pytest.mark.parametrize("url", [
        "",
        None,
        "not-a-url",
        "https://",
        "https://[::1",
        "https://example.com:99999/a.mp4",
        "https://exa mple.com/video.mp4",
        "https://exa<mple.com/video.mp4",
        "https://example.com/a\x01b.mp4",
    ])
    def test_rejects_invalid(self, url):
        """Unparseable URLs are rejected rather than raising."""
        assert is_url_allowed(url) is False


class TestContentTypeGate:
    """Test the audio/video content-type gate."""

    @pytest.mark.parametrize("content_type", [
        "video/mp4",
        "video/webm",
        "video/ogg",
        "video/mp4; charset=utf-8",
        "audio/mpeg",
        "audio/ogg",
        "Audio/MPEG",
    ])
    def test_allows_media(self, content_type):
        assert is_content_type_allowed(content_type) is True

    @pytest.mark.parametrize("content_type", [
        "text/html",
        "application/json",
        "application/javascript",
        "image/png",
        "text/plain; note=video/mp4",
    ])
    def test_rejects_non_media(self, content_type):
        assert is_content_type_allowed(content_type) is False

    def test_rejects_empty(self):
        """Missing content type is rejected."""
        assert is_content_type_allowed(None) is False
        assert is_content_type_allowed("") is False


class TestUserIdentity:
    """Test caller identity extraction."""

    def test_cloudflare_header(self):
        request = _FakeRequest(headers={"cf-access-authenticated-user-email": "user@example.com"})
        assert get_user_from_request(request) == "user@example.com"

    def test_query_param_fallback(self):
        request = _FakeRequest(query_params={"user": "dev@example.com"})
        assert get_user_from_request(request) == "dev@example.com"

    def test_header_wins_over_query(self):
        request = _FakeRequest(
            headers={"cf-access-authenticated-user-email": "real@example.com"},
            query_params={"user": "spoof@example.com"},
        )
        assert get_user_from_request(request) == "real@example.com"

    def test_anonymous(self):
        assert get_user_from_request(_FakeRequest()) is None
