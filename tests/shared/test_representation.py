"""
Tests for parsing HAAPI representation documents.
"""

import json

import pytest

from haapi.shared.errors import ActionDepthExceededError, DecodingError, UnknownTemplateError
from haapi.shared.representation import (
    MAX_ACTION_DEPTH,
    ClientOperationModel,
    FieldType,
    FormModel,
    RepresentationType,
    SelectorModel,
    Template,
    parse_representation,
)


def login_step() -> dict:
    return {
        "type": "authentication-step",
        "metadata": {"viewName": "authenticator/html-form/authenticate/get"},
        "actions": [
            {
                "template": "form",
                "kind": "login",
                "title": "Login",
                "model": {
                    "href": "/authn/authenticate/html-form",
                    "method": "POST",
                    "type": "application/x-www-form-urlencoded",
                    "actionTitle": "Login",
                    "fields": [
                        {"name": "userName", "type": "username", "label": "Username"},
                        {"name": "password", "type": "password", "label": "Password"},
                        {"name": "state", "type": "hidden", "value": "abc123"},
                    ],
                },
            }
        ],
        "links": [{"href": "/authn/register", "rel": "register-create", "title": "Create account"}],
        "messages": [{"text": "Welcome back", "classList": ["info", "heading"]}],
    }


def nested_form(depth: int) -> dict:
    action: dict = {"template": "form", "kind": "continue", "model": {"href": "/next", "method": "POST"}}
    for _ in range(depth - 1):
        action = {
            "template": "form",
            "kind": "continue",
            "model": {"href": "/next", "method": "POST", "continueActions": [action]},
        }
    return {"type": "authentication-step", "actions": [action]}


class TestParseRepresentation:
    def test_authentication_step(self):
        representation = parse_representation(json.dumps(login_step()))

        assert representation.step_type is RepresentationType.AUTHENTICATION_STEP
        assert len(representation.actions) == 1

        action = representation.actions[0]
        assert action.template is Template.FORM
        assert action.kind == "login"
        assert isinstance(action.model, FormModel)
        assert action.form is action.model
        assert action.client_operation is None
        assert action.model.action_title == "Login"

        fields = action.model.fields
        assert [field.name for field in fields] == ["userName", "password", "state"]
        assert fields[1].type is FieldType.PASSWORD
        assert fields[2].is_hidden
        assert fields[2].value == "abc123"

    def test_links_and_messages(self):
        representation = parse_representation(json.dumps(login_step()))

        assert representation.links[0].rel == "register-create"
        assert representation.links[0].title == "Create account"
        assert representation.messages[0].text == "Welcome back"
        assert representation.messages[0].class_list == ["info", "heading"]

    def test_template_is_case_insensitive(self):
        document = login_step()
        document["actions"][0]["template"] = "FORM"

        representation = parse_representation(json.dumps(document))

        assert representation.actions[0].template is Template.FORM

    def test_selector_and_client_operation_models(self):
        document = {
            "type": "authentication-step",
            "actions": [
                {
                    "template": "selector",
                    "kind": "authenticator-selector",
                    "model": {
                        "options": [
                            {
                                "template": "form",
                                "kind": "select-authenticator",
                                "title": "Username",
                                "model": {"href": "/authn/username", "method": "GET"},
                            }
                        ]
                    },
                },
                {
                    "template": "client-operation",
                    "kind": "login",
                    "model": {
                        "name": "bankid",
                        "arguments": {"href": "bankid:///?autostarttoken=x"},
                        "continueActions": [],
                        "errorActions": [],
                    },
                },
            ],
        }

        representation = parse_representation(json.dumps(document))

        selector, operation = representation.actions
        assert isinstance(selector.model, SelectorModel)
        assert selector.form is None
        assert selector.model.options[0].title == "Username"
        assert isinstance(operation.model, ClientOperationModel)
        assert operation.client_operation is operation.model
        assert operation.model.arguments["href"] == "bankid:///?autostarttoken=x"

    def test_unsupported_field_type(self):
        document = login_step()
        document["actions"][0]["model"]["fields"][0]["type"] = "fancy-date-picker"

        representation = parse_representation(json.dumps(document))

        assert representation.actions[0].form.fields[0].type is FieldType.UNSUPPORTED

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("authentication-step", RepresentationType.AUTHENTICATION_STEP),
            ("Polling-Step", RepresentationType.POLLING_STEP),
            ("https://curity.se/problems/invalid-input", RepresentationType.INVALID_INPUT_PROBLEM),
            ("https://curity.se/problems/something-new", RepresentationType.PROBLEM),
            ("oauth-error-response", RepresentationType.ERROR_AUTHORIZATION_RESPONSE),
            ("https://curity.se/problems/oauth-error-response", RepresentationType.ERROR_AUTHORIZATION_RESPONSE),
            ("registration-step", RepresentationType.UNKNOWN),
        ],
    )
    def test_representation_types(self, raw, expected):
        representation = parse_representation(json.dumps({"type": raw}))

        assert representation.step_type is expected
        assert representation.type == raw

    def test_reparse_is_idempotent(self):
        body = json.dumps(login_step())

        first = parse_representation(body)
        second = parse_representation(body)

        assert first == second
        assert parse_representation(first.model_dump_json(by_alias=True)) == first

    def test_top_level_members_are_kept(self):
        document = {
            "type": "https://curity.se/problems/error-authorization-response",
            "error": "access_denied",
            "error_description": "The user cancelled",
        }

        representation = parse_representation(json.dumps(document))

        assert representation.property_value("error") == "access_denied"
        assert representation.property_value("error_description") == "The user cancelled"
        assert representation.property_value("missing") is None


class TestRepresentationHelpers:
    def test_forms_by_kind(self):
        representation = parse_representation(
            json.dumps(
                {
                    "type": "polling-step",
                    "actions": [
                        {"template": "form", "kind": "poll", "model": {"href": "/poll", "method": "GET"}},
                        {"template": "form", "kind": "cancel", "model": {"href": "/cancel", "method": "POST"}},
                    ],
                }
            )
        )

        assert representation.poll_form.href == "/poll"
        assert representation.cancel_form.href == "/cancel"
        assert representation.redirect_form is None
        assert len(representation.form_actions) == 2
        assert representation.sole_form is None

    def test_sole_form(self):
        representation = parse_representation(json.dumps(login_step()))

        assert representation.sole_form.href == "/authn/authenticate/html-form"


class TestParseFailures:
    def test_unknown_top_level_template(self):
        document = login_step()
        document["actions"][0]["template"] = "carousel"

        with pytest.raises(UnknownTemplateError) as exc_info:
            parse_representation(json.dumps(document))

        assert exc_info.value.name == "carousel"

    def test_unknown_nested_template(self):
        document = login_step()
        document["actions"][0]["model"]["continueActions"] = [
            {"template": "carousel", "kind": "continue", "model": {}}
        ]

        with pytest.raises(UnknownTemplateError):
            parse_representation(json.dumps(document))

    def test_unknown_template_in_selector_option(self):
        document = {
            "type": "authentication-step",
            "actions": [
                {
                    "template": "selector",
                    "kind": "authenticator-selector",
                    "model": {"options": [{"template": "wizard", "kind": "select", "model": {}}]},
                }
            ],
        }

        with pytest.raises(UnknownTemplateError):
            parse_representation(json.dumps(document))

    def test_nesting_within_limit(self):
        representation = parse_representation(json.dumps(nested_form(5)))

        assert representation.actions[0].form.continue_actions[0].kind == "continue"

    def test_nesting_beyond_limit(self):
        with pytest.raises(ActionDepthExceededError) as exc_info:
            parse_representation(json.dumps(nested_form(MAX_ACTION_DEPTH + 1)))

        assert exc_info.value.limit == MAX_ACTION_DEPTH

    @pytest.mark.parametrize(
        "body",
        [
            b"",
            b"<html>Not found</html>",
            b"[1, 2, 3]",
            b'{"actions": []}',
            b'{"type": "authentication-step", "actions": [{"template": "form", "kind": "login"}]}',
        ],
    )
    def test_invalid_documents(self, body):
        with pytest.raises(DecodingError):
            parse_representation(body)
