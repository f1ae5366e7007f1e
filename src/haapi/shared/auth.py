from pydantic import BaseModel


class OAuthTokenResponse(BaseModel):
    """
    The token set issued for the authorization code at the end of a flow.
    See https://datatracker.ietf.org/doc/html/rfc6749#section-5.1
    """

    access_token: str
    token_type: str | None = None
    scope: str | None = None
    expires_in: int
    refresh_token: str
    # Only present when `openid` was among the requested scopes
    id_token: str | None = None

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

    def to_auth_header(self) -> dict[str, str]:
        return {"Authorization": f"{self.token_type or 'Bearer'} {self.access_token}"}


class TokenErrorResponse(BaseModel):
    """
    See https://datatracker.ietf.org/doc/html/rfc6749#section-5.2
    """

    error: str
    error_description: str | None = None
    error_uri: str | None = None
