"""
Flow states committed by the `FlowController`.

`FlowState` is a closed union; consumers are expected to `match` on it. Two
states compare equal when their payloads are structurally equal, which is what
the controller uses to suppress duplicate notifications.
"""

from __future__ import annotations

from dataclasses import dataclass

from haapi.shared.auth import OAuthTokenResponse
from haapi.shared.problems import Problem
from haapi.shared.representation import Action, Link, Message, Representation
from haapi.shared.steps import OAuthAuthorizationResponse, PollingStep


@dataclass(frozen=True)
class StepContent:
    """A step to present: the representation plus the actions that currently apply to it."""

    representation: Representation
    actions: list[Action]

    @classmethod
    def of(cls, representation: Representation) -> StepContent:
        return cls(representation=representation, actions=representation.actions)

    @property
    def title(self) -> str:
        if self.representation.title:
            return self.representation.title
        for action in self.actions:
            if action.title:
                return action.title
        return self.representation.type

    @property
    def messages(self) -> list[Message]:
        return self.representation.messages

    @property
    def links(self) -> list[Link]:
        return self.representation.links


@dataclass(frozen=True)
class NoFlow:
    """No flow has been started, or it was reset."""


@dataclass(frozen=True)
class SystemFailure:
    """The flow was interrupted by an error."""

    cause: Exception

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SystemFailure):
            return NotImplemented
        return type(self.cause) is type(other.cause) and str(self.cause) == str(other.cause)

    def __hash__(self) -> int:
        return hash((type(self.cause), str(self.cause)))


@dataclass(frozen=True)
class NextStep:
    content: StepContent


@dataclass(frozen=True)
class ProblemState:
    problem: Problem


@dataclass(frozen=True)
class AuthorizationResponse:
    """The flow produced an authorization code that still has to be exchanged."""

    response: OAuthAuthorizationResponse

    @property
    def code(self) -> str:
        return self.response.code


@dataclass(frozen=True)
class AccessToken:
    tokens: OAuthTokenResponse


@dataclass(frozen=True)
class Polling:
    step: PollingStep


FlowState = NoFlow | SystemFailure | NextStep | ProblemState | AuthorizationResponse | AccessToken | Polling
