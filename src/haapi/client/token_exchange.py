"""
Authorization code exchange.

The last call of a flow: trade the authorization code for a token set at the
profile's token endpoint.
"""

import logging

import httpx
from pydantic import ValidationError

from haapi.client.profile import Profile
from haapi.shared.auth import OAuthTokenResponse, TokenErrorResponse
from haapi.shared.errors import DecodingError, TokenExchangeError, TransportError, stringify_pydantic_error

logger = logging.getLogger(__name__)


class TokenExchange:
    GRANT_TYPE = "authorization_code"

    def __init__(self, profile: Profile, http_client: httpx.AsyncClient):
        self.profile = profile
        self.http_client = http_client

    def build_request(self, code: str) -> httpx.Request:
        """Build the form-encoded token request. Raises InvalidConfigurationError for a bad token endpoint."""
        token_data = {
            "grant_type": self.GRANT_TYPE,
            "code": code,
            "client_id": self.profile.client_id,
            "redirect_uri": self.profile.redirect_uri,
        }

        return self.http_client.build_request(
            "POST",
            self.profile.token_url(),
            data=token_data,
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
        )

    def handle_response(self, response: httpx.Response) -> OAuthTokenResponse:
        """Decode a token endpoint response."""
        if response.status_code != 200:
            try:
                error_response = TokenErrorResponse.model_validate_json(response.content)
            except ValidationError:
                raise TokenExchangeError(response.status_code)
            raise TokenExchangeError(response.status_code, error_response.error, error_response.error_description)

        try:
            tokens = OAuthTokenResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise DecodingError(f"Invalid token response: {stringify_pydantic_error(e)}") from e

        logger.debug("Token exchange successful")
        return tokens

    async def exchange(self, code: str) -> OAuthTokenResponse:
        request = self.build_request(code)
        logger.debug(f"Exchanging authorization code at {request.url}")
        try:
            response = await self.http_client.send(request)
        except httpx.HTTPError as e:
            logger.error(f"HTTP error during token exchange: {e}")
            raise TransportError(e) from e

        return self.handle_response(response)
