"""
Derived step shapes.

These recognise specific step kinds in a generic `Representation`. Each one is
a strict match: a representation that doesn't have exactly the expected shape
is not that step.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from haapi.shared.representation import Action, FormModel, Representation, RepresentationType


@dataclass(frozen=True)
class RedirectionStep:
    """A step whose only purpose is to have the client submit one form right away."""

    redirect_form: FormModel

    @classmethod
    def from_representation(cls, representation: Representation) -> RedirectionStep | None:
        if representation.step_type is not RepresentationType.REDIRECTION_STEP:
            return None
        if len(representation.actions) != 1:
            return None
        return cls.from_action(representation.actions[0])

    @classmethod
    def from_action(cls, action: Action) -> RedirectionStep | None:
        form = action.form
        if not action.is_redirect or form is None:
            return None
        return cls(redirect_form=form)


class PollingStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, value: object) -> PollingStatus:
        for member in (cls.PENDING, cls.DONE, cls.FAILED):
            if value == member.value:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class PollingStep:
    """
    A step for server-side work in progress.

    The client re-queries it with the `poll` action until the status turns to
    done or failed, then continues with the redirect (or sole) form.
    """

    representation: Representation

    @classmethod
    def from_representation(cls, representation: Representation) -> PollingStep | None:
        if representation.step_type is not RepresentationType.POLLING_STEP:
            return None
        return cls(representation)

    @property
    def actions(self) -> list[Action]:
        return self.representation.actions

    @property
    def status(self) -> PollingStatus:
        return PollingStatus.from_raw(self.representation.properties.get("status"))

    @property
    def poll_form(self) -> FormModel | None:
        return self.representation.poll_form

    @property
    def cancel_form(self) -> FormModel | None:
        return self.representation.cancel_form

    @property
    def form_model(self) -> FormModel | None:
        """The form to act on next, given the current status."""
        match self.status:
            case PollingStatus.PENDING:
                return self.representation.poll_form or self.representation.cancel_form
            case PollingStatus.DONE | PollingStatus.FAILED:
                return self.representation.redirect_form or self.representation.sole_form
            case PollingStatus.UNKNOWN:
                return None

    @property
    def auxiliary_actions(self) -> list[Action]:
        """Titled actions other than the ones the current status consumes."""
        match self.status:
            case PollingStatus.PENDING:
                consumed = {"poll", "cancel"}
            case PollingStatus.DONE | PollingStatus.FAILED:
                consumed = {"redirect"}
            case PollingStatus.UNKNOWN:
                consumed = set()
        return [action for action in self.actions if action.title is not None and action.kind not in consumed]


@dataclass(frozen=True)
class OAuthAuthorizationResponse:
    """The terminal step carrying the authorization code."""

    code: str
    representation: Representation

    @classmethod
    def from_representation(cls, representation: Representation) -> OAuthAuthorizationResponse | None:
        if representation.step_type is not RepresentationType.OAUTH_AUTHORIZATION_RESPONSE:
            return None
        code = representation.property_value("code")
        if not code:
            return None
        return cls(code=code, representation=representation)
