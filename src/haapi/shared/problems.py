"""
Problem classification.

A HAAPI server answers a step with a problem document instead of a new step
when something went wrong. `classify` turns such a representation into one of
the `Problem` types below, or returns None when the representation is an
ordinary step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from haapi.shared.errors import ProblemError
from haapi.shared.representation import InvalidField, Message, Representation, RepresentationType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Problem:
    """A generic server-side problem."""

    representation: Representation

    @property
    def type(self) -> str:
        return self.representation.type

    @property
    def title(self) -> str | None:
        return self.representation.title

    @property
    def messages(self) -> list[Message]:
        return self.representation.messages

    @property
    def description(self) -> str:
        if self.representation.title:
            return self.representation.title
        if self.representation.messages:
            return "\n".join(message.text for message in self.representation.messages)
        return self.representation.type

    @property
    def error(self) -> ProblemError | None:
        """The error this problem raises when it ends the flow, or None if it doesn't."""
        return ProblemError(self)


@dataclass(frozen=True)
class InvalidInputProblem(Problem):
    """Input was rejected; the current step can be resubmitted."""

    @property
    def invalid_fields(self) -> list[InvalidField]:
        return self.representation.invalid_fields

    @property
    def error(self) -> ProblemError | None:
        return None


@dataclass(frozen=True)
class AuthorizationProblem(Problem):
    """An OAuth error authorization response; always ends the flow."""

    error_code: str
    error_description: str

    @property
    def description(self) -> str:
        return f"{self.error_code}: {self.error_description}"


def classify(representation: Representation) -> Problem | None:
    """Classify a representation as a problem, or return None for an ordinary step."""
    step_type = representation.step_type
    if not step_type.is_problem:
        return None

    match step_type:
        case RepresentationType.INVALID_INPUT_PROBLEM:
            return InvalidInputProblem(representation)
        case RepresentationType.ERROR_AUTHORIZATION_RESPONSE:
            error = representation.property_value("error")
            error_description = representation.property_value("error_description") or representation.property_value(
                "errorDescription"
            )
            if error is None or error_description is None:
                logger.warning(
                    f"Ignoring authorization error response without error/error_description: {representation.type}"
                )
                return None
            return AuthorizationProblem(representation, error_code=error, error_description=error_description)
        case _:
            return Problem(representation)
