"""
Server profile consumed by the flow controller.

The controller only needs the client registration and endpoint URLs below; how
profiles are stored or edited is up to the application. Every field can be
supplied from the environment with the `HAAPI_` prefix.
"""

from urllib.parse import urlencode, urljoin, urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from haapi.shared.errors import InvalidConfigurationError


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class Profile(BaseSettings):
    """Settings for one HAAPI server and client."""

    model_config = SettingsConfigDict(env_prefix="HAAPI_")

    name: str = "Default"
    client_id: str = "haapi-python-dev-client"
    base_url: str = "https://localhost:8443"
    authorization_endpoint_uri: str = "https://localhost:8443/dev/oauth/authorize"
    token_endpoint_uri: str = "https://localhost:8443/dev/oauth/token"
    # Custom scheme registered by the application; also the return channel of external-browser operations
    redirect_uri: str = "haapi:start"

    follow_redirects: bool = True
    automatic_polling: bool = True
    polling_interval: float = Field(3.0, gt=0, description="Seconds between automatic polls")
    trust_all_certificates: bool = False
    selected_scopes: list[str] = Field(default_factory=list)

    def validate_endpoints(self) -> None:
        """Fail fast on endpoint URLs the flow could not use."""
        self.authorization_url()
        self.token_url()

    def authorization_url(self) -> str:
        if not _is_http_url(self.authorization_endpoint_uri):
            raise InvalidConfigurationError(f"Invalid authorization endpoint: {self.authorization_endpoint_uri!r}")

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
        }
        if self.selected_scopes:
            params["scope"] = " ".join(self.selected_scopes)

        separator = "&" if urlparse(self.authorization_endpoint_uri).query else "?"
        return f"{self.authorization_endpoint_uri}{separator}{urlencode(params)}"

    def token_url(self) -> str:
        if not _is_http_url(self.token_endpoint_uri):
            raise InvalidConfigurationError(f"Invalid token endpoint: {self.token_endpoint_uri!r}")
        return self.token_endpoint_uri

    def url_relative_to_base(self, href: str) -> str:
        """Resolve a server-supplied href against `base_url`."""
        if not _is_http_url(self.base_url):
            raise InvalidConfigurationError(f"Invalid base URL: {self.base_url!r}")
        url = urljoin(self.base_url, href)
        if not _is_http_url(url):
            raise InvalidConfigurationError(f"Invalid href: {href!r}")
        return url
