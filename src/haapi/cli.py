"""
haapi-login - run a HAAPI authentication flow from the terminal.
"""

import logging
import sys
from typing import Any

import anyio
import click
from pydantic import ValidationError

from haapi.client.client_operations import ExternalBrowserClientOperation
from haapi.client.controller import FlowController
from haapi.client.profile import Profile
from haapi.client.state import (
    AccessToken,
    AuthorizationResponse,
    FlowState,
    NextStep,
    NoFlow,
    Polling,
    ProblemState,
    StepContent,
    SystemFailure,
)
from haapi.shared.errors import stringify_pydantic_error
from haapi.shared.problems import InvalidInputProblem
from haapi.shared.representation import Action, FieldType, FormModel, Template

logger = logging.getLogger(__name__)


class LoginCLI:
    """
    Drives a `FlowController` by prompting for each step in the terminal.
    """

    def __init__(self, controller: FlowController) -> None:
        self.controller = controller
        self._changed = anyio.Event()
        self._last_step: StepContent | None = None
        self.controller.subscribe(self._on_state)

    def _on_state(self, state: FlowState) -> None:
        logger.debug(f"State changed: {type(state).__name__}")
        self._changed.set()

    async def _prompt(self, text: str, **kwargs: Any) -> Any:
        # Keeps the event loop free for polling and client operations
        return await anyio.to_thread.run_sync(lambda: click.prompt(text, **kwargs))

    async def _wait_for_change(self, state: FlowState) -> FlowState:
        while self.controller.state == state:
            self._changed = anyio.Event()
            await self._changed.wait()
        return self.controller.state

    async def run(self, profile: Profile) -> int:
        state = await self.controller.start(profile)

        while True:
            match state:
                case AccessToken(tokens=tokens):
                    click.echo("\nLogin complete. Token response:")
                    click.echo(tokens.model_dump_json(indent=2, exclude_none=True))
                    return 0
                case AuthorizationResponse(code=code):
                    click.echo(f"\nAuthorization code received: {code}")
                    state = await self.controller.get_access_token(code)
                case NextStep(content=content):
                    self._last_step = content
                    state = await self.handle_step(content)
                case Polling(step=step):
                    click.echo(f"Waiting for authentication ({step.status.value})...")
                    if profile.automatic_polling:
                        state = await self._wait_for_change(state)
                    elif (form := step.form_model) is not None:
                        await self._prompt("Press enter to poll", default="", show_default=False)
                        state = await self.controller.submit_form(form)
                    else:
                        click.echo("Polling step offers nothing to do.")
                        return 1
                case ProblemState(problem=problem):
                    click.echo(f"\nProblem: {problem.description}", err=True)
                    if isinstance(problem, InvalidInputProblem):
                        for field in problem.invalid_fields:
                            click.echo(f"  {field.name}: {field.detail or field.reason or 'invalid'}", err=True)
                    if problem.representation.actions:
                        state = await self.handle_actions(state, problem.representation.actions)
                    elif self._last_step is not None:
                        # Let the user retry the step the problem was raised for
                        state = await self.handle_step(self._last_step)
                    else:
                        return 1
                case SystemFailure(cause=cause):
                    click.echo(f"\nError: {cause}", err=True)
                    return 1
                case NoFlow():
                    click.echo("The flow was reset.", err=True)
                    return 1

    async def handle_step(self, content: StepContent) -> FlowState:
        click.echo(f"\n== {content.title} ==")
        for message in content.messages:
            click.echo(message.text)
        for link in content.links:
            click.echo(f"  [{link.rel}] {link.title or link.href}")
        return await self.handle_actions(self.controller.state, content.actions)

    async def handle_actions(self, state: FlowState, actions: list[Action]) -> FlowState:
        operation = self.controller.client_operation
        if operation is not None:
            if isinstance(operation, ExternalBrowserClientOperation):
                click.echo("Continue in the browser, then paste the URL it returned to.")
                url = await self._prompt("Return URL")
                await self.controller.handle_url(url)
                return await self._wait_for_change(state)
            click.echo(f"Waiting for client-operation {operation.name}...")
            return await self._wait_for_change(state)

        action = await self.choose(actions)
        if action is None:
            click.echo("Nothing to do in this step.", err=True)
            return SystemFailure(RuntimeError("No usable action"))
        return await self.perform(action)

    async def choose(self, actions: list[Action]) -> Action | None:
        usable = [action for action in actions if action.template is not Template.CLIENT_OPERATION]
        if len(usable) <= 1:
            return usable[0] if usable else None

        for index, action in enumerate(usable, start=1):
            click.echo(f"  {index}. {action.title or action.kind}")
        choice = await self._prompt("Choose", type=click.IntRange(1, len(usable)))
        return usable[choice - 1]

    async def perform(self, action: Action) -> FlowState:
        if action.template is Template.SELECTOR:
            option = await self.choose(action.model.options)  # type: ignore[union-attr]
            if option is None:
                return SystemFailure(RuntimeError("Selector has no options"))
            return await self.perform(option)

        form = action.form
        assert form is not None
        values = await self.fill(form)
        return await self.controller.submit_form(form, values)

    async def fill(self, form: FormModel) -> dict[str, str]:
        values: dict[str, str] = {}
        for field in form.fields:
            if field.is_hidden:
                continue
            label = field.label or field.name
            if field.type is FieldType.CHECKBOX:
                checked = await anyio.to_thread.run_sync(lambda: click.confirm(label, default=bool(field.value)))
                if checked:
                    values[field.name] = field.value or "on"
                continue
            values[field.name] = await self._prompt(
                label,
                default=field.value or field.placeholder or "",
                hide_input=field.type is FieldType.PASSWORD,
                show_default=field.type is not FieldType.PASSWORD,
            )
        return values


async def _run_login(profile: Profile) -> int:
    async with FlowController() as controller:
        return await LoginCLI(controller).run(profile)


@click.command()
@click.option("--base-url", default=None, help="Base URL of the HAAPI server")
@click.option("--client-id", default=None, help="OAuth client ID")
@click.option("--authorization-endpoint", default=None, help="Authorization endpoint URL")
@click.option("--token-endpoint", default=None, help="Token endpoint URL")
@click.option("--redirect-uri", default=None, help="Redirect URI registered for the client")
@click.option("--scope", "scopes", multiple=True, help="Scope to request; may be repeated")
@click.option("--no-follow-redirects", is_flag=True, help="Stop at redirects and authorization responses")
@click.option("--insecure", is_flag=True, help="Trust all server certificates")
@click.option(
    "--log-level",
    default="WARNING",
    help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)
def main(
    base_url: str | None,
    client_id: str | None,
    authorization_endpoint: str | None,
    token_endpoint: str | None,
    redirect_uri: str | None,
    scopes: tuple[str, ...],
    no_follow_redirects: bool,
    insecure: bool,
    log_level: str,
) -> None:
    """
    Log in against a HAAPI server.

    Settings not given as options are read from HAAPI_* environment variables.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    overrides: dict[str, Any] = {
        "base_url": base_url,
        "client_id": client_id,
        "authorization_endpoint_uri": authorization_endpoint,
        "token_endpoint_uri": token_endpoint,
        "redirect_uri": redirect_uri,
        "selected_scopes": list(scopes) or None,
        "follow_redirects": False if no_follow_redirects else None,
        "trust_all_certificates": True if insecure else None,
    }

    try:
        profile = Profile(**{key: value for key, value in overrides.items() if value is not None})
    except ValidationError as e:
        logger.error(f"Configuration error: {stringify_pydantic_error(e)}")
        sys.exit(1)

    # click discards return values
    sys.exit(anyio.run(_run_login, profile))


if __name__ == "__main__":
    main()  # type: ignore[call-arg]
