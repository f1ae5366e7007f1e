"""
Tests for the authorization code exchange.
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from haapi.client.profile import Profile
from haapi.client.token_exchange import TokenExchange
from haapi.shared.errors import DecodingError, TokenExchangeError, TransportError


@pytest.fixture
def profile():
    return Profile(
        client_id="test-client",
        base_url="https://idsvr.example.com",
        authorization_endpoint_uri="https://idsvr.example.com/oauth/authorize",
        token_endpoint_uri="https://idsvr.example.com/oauth/token",
        redirect_uri="app:start",
    )


def token_exchange(profile: Profile, handler) -> TokenExchange:
    return TokenExchange(profile, httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestTokenExchange:
    def test_build_request(self, profile):
        exchange = token_exchange(profile, lambda request: httpx.Response(200))

        request = exchange.build_request("the-code")

        assert request.method == "POST"
        assert str(request.url) == "https://idsvr.example.com/oauth/token"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert parse_qs(request.content.decode()) == {
            "grant_type": ["authorization_code"],
            "code": ["the-code"],
            "client_id": ["test-client"],
            "redirect_uri": ["app:start"],
        }

    @pytest.mark.anyio
    async def test_successful_exchange(self, profile):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "access_token": "at",
                    "token_type": "bearer",
                    "scope": "openid read",
                    "expires_in": 300,
                    "refresh_token": "rt",
                    "id_token": "idt",
                },
            )

        tokens = await token_exchange(profile, handler).exchange("the-code")

        assert tokens.access_token == "at"
        assert tokens.scopes == ["openid", "read"]
        assert tokens.id_token == "idt"
        assert tokens.to_auth_header() == {"Authorization": "bearer at"}

    @pytest.mark.anyio
    async def test_error_response(self, profile):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code expired"})

        with pytest.raises(TokenExchangeError) as exc_info:
            await token_exchange(profile, handler).exchange("the-code")

        assert exc_info.value.status_code == 400
        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.error_description == "Code expired"

    @pytest.mark.anyio
    async def test_error_without_body(self, profile):
        with pytest.raises(TokenExchangeError) as exc_info:
            await token_exchange(profile, lambda request: httpx.Response(503)).exchange("the-code")

        assert exc_info.value.status_code == 503
        assert exc_info.value.error is None

    @pytest.mark.anyio
    async def test_malformed_token_response(self, profile):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps({"access_token": "at"}).encode())

        with pytest.raises(DecodingError):
            await token_exchange(profile, handler).exchange("the-code")

    @pytest.mark.anyio
    async def test_transport_failure(self, profile):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            await token_exchange(profile, handler).exchange("the-code")

        assert isinstance(exc_info.value.cause, httpx.ConnectError)
