"""
Hypermedia representation documents.

A representation is the JSON document a HAAPI server returns for every step of
an authentication flow: what kind of step it is, what the client may do next
(actions), and auxiliary display data (links, messages, invalid fields).
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from haapi.shared.errors import (
    ActionDepthExceededError,
    DecodingError,
    UnknownTemplateError,
    stringify_pydantic_error,
)

logger = logging.getLogger(__name__)

PROBLEM_PREFIX = "https://curity.se/problems/"

# Server-supplied nesting is unbounded input
MAX_ACTION_DEPTH = 32


class HaapiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RepresentationType(str, Enum):
    """Step kinds a representation can carry."""

    AUTHENTICATION_STEP = "authentication-step"
    CONTINUE_SAME_STEP = "continue-same-step"
    REDIRECTION_STEP = "redirection-step"
    USER_CONSENT_STEP = "user-consent-step"
    OAUTH_AUTHORIZATION_RESPONSE = "oauth-authorization-response"
    POLLING_STEP = "polling-step"
    INCORRECT_CREDENTIALS_PROBLEM = PROBLEM_PREFIX + "incorrect-credentials"
    INVALID_INPUT_PROBLEM = PROBLEM_PREFIX + "invalid-input"
    UNEXPECTED_PROBLEM = PROBLEM_PREFIX + "unexpected"
    ERROR_AUTHORIZATION_RESPONSE = PROBLEM_PREFIX + "error-authorization-response"
    # Any other problem-prefixed type
    PROBLEM = "problem"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, value: str) -> RepresentationType:
        value = value.lower()
        if value in _AUTHORIZATION_ERROR_ALIASES:
            return cls.ERROR_AUTHORIZATION_RESPONSE
        for member in cls:
            if member not in (cls.PROBLEM, cls.UNKNOWN) and member.value == value:
                return member
        if value.startswith(PROBLEM_PREFIX):
            return cls.PROBLEM
        return cls.UNKNOWN

    @property
    def is_problem(self) -> bool:
        return self in _PROBLEM_TYPES


# Servers also label OAuth error responses with these types
_AUTHORIZATION_ERROR_ALIASES = frozenset({"oauth-error-response", PROBLEM_PREFIX + "oauth-error-response"})

_PROBLEM_TYPES = frozenset(
    {
        RepresentationType.INCORRECT_CREDENTIALS_PROBLEM,
        RepresentationType.INVALID_INPUT_PROBLEM,
        RepresentationType.UNEXPECTED_PROBLEM,
        RepresentationType.ERROR_AUTHORIZATION_RESPONSE,
        RepresentationType.PROBLEM,
    }
)


class Template(str, Enum):
    FORM = "form"
    SELECTOR = "selector"
    CLIENT_OPERATION = "client-operation"


class FieldType(str, Enum):
    USERNAME = "username"
    PASSWORD = "password"
    HIDDEN = "hidden"
    CHECKBOX = "checkbox"
    UNSUPPORTED = "unsupported"

    @classmethod
    def _missing_(cls, value: object) -> FieldType:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return cls.UNSUPPORTED


class FormField(HaapiModel):
    name: str
    type: FieldType = FieldType.UNSUPPORTED
    label: str | None = None
    value: str | None = None
    placeholder: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _field_type(cls, value: Any) -> FieldType:
        return FieldType(value)

    @property
    def is_hidden(self) -> bool:
        return self.type is FieldType.HIDDEN


class Link(HaapiModel):
    href: str
    rel: str
    title: str | None = None
    type: str | None = None


class Message(HaapiModel):
    text: str
    class_list: list[str] = Field(default_factory=list)


class InvalidField(HaapiModel):
    name: str
    reason: str | None = None
    detail: str | None = None


class FormModel(HaapiModel):
    """An HTTP submission descriptor."""

    href: str
    method: str
    fields: list[FormField] = Field(default_factory=list)
    continue_actions: list[Action] = Field(default_factory=list)
    type: str | None = None
    title: str | None = None
    action_title: str | None = None


class SelectorModel(HaapiModel):
    options: list[Action] = Field(default_factory=list)


class ClientOperationModel(HaapiModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    continue_actions: list[Action] = Field(default_factory=list)
    error_actions: list[Action] = Field(default_factory=list)


ActionModel = FormModel | SelectorModel | ClientOperationModel

_MODEL_TYPES: dict[Template, type[HaapiModel]] = {
    Template.FORM: FormModel,
    Template.SELECTOR: SelectorModel,
    Template.CLIENT_OPERATION: ClientOperationModel,
}


class Action(HaapiModel):
    """A described next operation; `model` is shaped by `template`."""

    template: Template
    kind: str
    model: ActionModel
    title: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    continue_actions: list[Action] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _check_template(cls, data: Any) -> Any:
        if isinstance(data, dict) and "template" in data:
            raw = data["template"]
            if isinstance(raw, Template):
                return data
            name = str(raw)
            try:
                template = Template(name.lower())
            except ValueError:
                raise UnknownTemplateError(name) from None
            return {**data, "template": template}
        return data

    @field_validator("model", mode="before")
    @classmethod
    def _model_for_template(cls, value: Any, info: ValidationInfo) -> Any:
        template = info.data.get("template")
        if template is None or not isinstance(value, dict):
            return value
        return _MODEL_TYPES[template].model_validate(value)

    @property
    def form(self) -> FormModel | None:
        match self.model:
            case FormModel():
                return self.model
            case SelectorModel() | ClientOperationModel():
                return None

    @property
    def client_operation(self) -> ClientOperationModel | None:
        match self.model:
            case ClientOperationModel():
                return self.model
            case FormModel() | SelectorModel():
                return None

    @property
    def is_redirect(self) -> bool:
        return self.kind == "redirect"


class Representation(HaapiModel):
    """A parsed HAAPI response document."""

    type: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    actions: list[Action] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)
    invalid_fields: list[InvalidField] = Field(default_factory=list)
    title: str | None = None
    code: str | None = None

    # Problem documents carry top-level members such as `error`
    model_config = ConfigDict(extra="allow")

    @property
    def step_type(self) -> RepresentationType:
        return RepresentationType.from_raw(self.type)

    def property_value(self, name: str) -> str | None:
        """Look a string value up in `properties`, then among the extra top-level members."""
        value = self.properties.get(name)
        if value is None and self.model_extra:
            value = self.model_extra.get(name)
        return value if isinstance(value, str) else None

    def _form_of_kind(self, kind: str) -> FormModel | None:
        for action in self.actions:
            if action.kind == kind:
                return action.form
        return None

    @property
    def poll_form(self) -> FormModel | None:
        return self._form_of_kind("poll")

    @property
    def cancel_form(self) -> FormModel | None:
        return self._form_of_kind("cancel")

    @property
    def redirect_form(self) -> FormModel | None:
        return self._form_of_kind("redirect")

    @property
    def form_actions(self) -> list[Action]:
        return [action for action in self.actions if action.template is Template.FORM]

    @property
    def sole_form(self) -> FormModel | None:
        """The form of the only form-templated action, if there is exactly one."""
        forms = self.form_actions
        if len(forms) != 1:
            return None
        return forms[0].form


FormModel.model_rebuild()
SelectorModel.model_rebuild()
ClientOperationModel.model_rebuild()
Action.model_rebuild()
Representation.model_rebuild()


def _check_action_depth(document: Any, limit: int = MAX_ACTION_DEPTH) -> None:
    pending: list[tuple[Any, int]] = [(action, 1) for action in _as_list(document.get("actions"))]
    while pending:
        action, depth = pending.pop()
        if depth > limit:
            raise ActionDepthExceededError(limit)
        if not isinstance(action, dict):
            continue
        nested = _as_list(action.get("continueActions"))
        model = action.get("model")
        if isinstance(model, dict):
            nested += _as_list(model.get("continueActions"))
            nested += _as_list(model.get("errorActions"))
            nested += _as_list(model.get("options"))
        pending.extend((child, depth + 1) for child in nested)


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def parse_representation(content: bytes | str) -> Representation:
    """Parse a response body into a `Representation`.

    Raises:
        UnknownTemplateError: an action, at any depth, has an unrecognised template.
        ActionDepthExceededError: actions are nested deeper than `MAX_ACTION_DEPTH`.
        DecodingError: the body is not JSON or does not match the schema.
    """
    try:
        document = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodingError(f"Response body is not JSON: {e}") from e

    if not isinstance(document, dict):
        raise DecodingError("Response body is not a JSON object")

    _check_action_depth(document)

    try:
        return Representation.model_validate(document)
    except ValidationError as e:
        raise DecodingError(f"Invalid representation: {stringify_pydantic_error(e)}") from e
