"""
Tests for the server profile.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from pydantic import ValidationError

from haapi.client.profile import Profile
from haapi.shared.errors import InvalidConfigurationError


@pytest.fixture
def profile():
    return Profile(
        client_id="test-client",
        base_url="https://idsvr.example.com",
        authorization_endpoint_uri="https://idsvr.example.com/oauth/authorize",
        token_endpoint_uri="https://idsvr.example.com/oauth/token",
        redirect_uri="app:start",
    )


class TestProfile:
    def test_authorization_url(self, profile):
        url = urlparse(profile.authorization_url())

        assert url.path == "/oauth/authorize"
        assert parse_qs(url.query) == {
            "client_id": ["test-client"],
            "response_type": ["code"],
            "redirect_uri": ["app:start"],
        }

    def test_authorization_url_with_scopes(self, profile):
        profile.selected_scopes = ["openid", "read"]

        query = parse_qs(urlparse(profile.authorization_url()).query)

        assert query["scope"] == ["openid read"]

    def test_authorization_url_keeps_existing_query(self, profile):
        profile.authorization_endpoint_uri = "https://idsvr.example.com/oauth/authorize?for_origin=app"

        query = parse_qs(urlparse(profile.authorization_url()).query)

        assert query["for_origin"] == ["app"]
        assert query["client_id"] == ["test-client"]

    @pytest.mark.parametrize("href", ["/authn/authenticate", "authn/authenticate"])
    def test_url_relative_to_base(self, profile, href):
        assert profile.url_relative_to_base(href) == "https://idsvr.example.com/authn/authenticate"

    def test_absolute_href_wins(self, profile):
        assert profile.url_relative_to_base("https://other.example.com/x") == "https://other.example.com/x"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("authorization_endpoint_uri", ""),
            ("authorization_endpoint_uri", "not a url"),
            ("token_endpoint_uri", "ftp://idsvr.example.com/token"),
        ],
    )
    def test_validate_endpoints(self, profile, field, value):
        setattr(profile, field, value)

        with pytest.raises(InvalidConfigurationError):
            profile.validate_endpoints()

    def test_invalid_base_url(self, profile):
        profile.base_url = "idsvr"

        with pytest.raises(InvalidConfigurationError):
            profile.url_relative_to_base("/authn")

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("HAAPI_CLIENT_ID", "env-client")
        monkeypatch.setenv("HAAPI_POLLING_INTERVAL", "0.5")
        monkeypatch.setenv("HAAPI_FOLLOW_REDIRECTS", "false")

        profile = Profile()

        assert profile.client_id == "env-client"
        assert profile.polling_interval == 0.5
        assert profile.follow_redirects is False

    def test_polling_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            Profile(polling_interval=0)
