"""
Error taxonomy for the HAAPI flow controller.

Every error below ends up as the cause of a `SystemFailure` flow state; the
controller never raises them to its callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

if TYPE_CHECKING:
    from haapi.shared.problems import Problem


class HaapiFlowError(Exception):
    """Base exception for HAAPI flow errors."""

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.args == other.args  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class InvalidConfigurationError(HaapiFlowError):
    """Raised when a profile URL is missing or unusable."""

    pass


class TransportError(HaapiFlowError):
    """Raised when the HTTP request itself failed (network, TLS, timeout)."""

    def __init__(self, cause: Exception):
        super().__init__(f"Transport failure: {cause}")
        self.cause = cause


class ServerError(HaapiFlowError):
    """Raised when the server answered with a status the flow cannot handle."""

    def __init__(self, status_code: int):
        super().__init__(f"Server error ({status_code})")
        self.status_code = status_code


class NoResponseBodyError(HaapiFlowError):
    """Raised when a response carried no body."""

    def __init__(self):
        super().__init__("No data received")


class NoCurrentStateError(HaapiFlowError):
    """Raised when continuation data arrives but there is no step to continue."""

    def __init__(self):
        super().__init__("Invalid state: there is no current step to continue")


class DecodingError(HaapiFlowError):
    """Raised when a response body is not a valid document."""

    pass


class UnknownTemplateError(DecodingError):
    """Raised when an action carries a template this client does not know."""

    def __init__(self, name: str):
        super().__init__(f"Unknown action template: {name}")
        self.name = name


class ActionDepthExceededError(DecodingError):
    """Raised when nested actions go deeper than the parser accepts."""

    def __init__(self, limit: int):
        super().__init__(f"Actions are nested deeper than {limit} levels")
        self.limit = limit


class ProblemError(HaapiFlowError):
    """Raised when the server returned a problem that aborts the flow."""

    def __init__(self, problem: Problem):
        super().__init__(problem.description)
        self.problem = problem

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ProblemError) and self.problem == other.problem

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class IllegalResetError(HaapiFlowError):
    """Raised when an action completes after the flow was reset."""

    def __init__(self):
        super().__init__("Flow was reset while performing an action")


class InvalidClientOperationInputError(HaapiFlowError):
    """Raised when a client operation receives external input it cannot use."""

    pass


class TokenExchangeError(HaapiFlowError):
    """Raised when the token endpoint refused the authorization code."""

    def __init__(self, status_code: int, error: str | None = None, error_description: str | None = None):
        detail = error_description or error or "Unknown error"
        super().__init__(f"Token exchange failed: {detail} (HTTP {status_code})")
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


def stringify_pydantic_error(validation_error: ValidationError) -> str:
    return "\n".join(f"{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}" for e in validation_error.errors())
