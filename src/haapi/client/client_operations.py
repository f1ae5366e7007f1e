"""
Client operations.

A client operation is a step the server asks the client to carry out itself,
such as launching an external app or a browser, instead of submitting a form.
The dispatcher picks at most one operation out of a step's actions and builds
the handler registered for its name.
"""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol
from urllib.parse import parse_qs, urlparse

import anyio
import httpx

from haapi.shared.errors import InvalidClientOperationInputError
from haapi.shared.representation import Action, ClientOperationModel, FormModel

if TYPE_CHECKING:
    from haapi.client.state import FlowState

logger = logging.getLogger(__name__)

RESUME_NONCE_PARAMETER = "_resume_nonce"

UrlOpener = Callable[[str], Awaitable[bool]]
CompletionCallback = Callable[[bool], None]


class ContinueActionsHandler(Protocol):
    async def handle_continue_actions(self, actions: list[Action]) -> FlowState: ...


class FormSubmitter(Protocol):
    async def submit_form(self, form: FormModel, parameter_overrides: dict[str, str] | None = None) -> FlowState: ...


async def open_in_browser(url: str) -> bool:
    """Open a URL with the platform's default handler."""
    return await anyio.to_thread.run_sync(webbrowser.open, url)


class ClientOperation:
    """Base class for client operation handlers."""

    def __init__(self, model: ClientOperationModel, url_opener: UrlOpener, redirect_uri: str):
        self.model = model
        self.url_opener = url_opener
        self.redirect_uri = redirect_uri

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def href(self) -> str | None:
        href = self.model.arguments.get("href")
        return href if isinstance(href, str) and href else None

    async def start(self, redirector: ContinueActionsHandler, on_completion: CompletionCallback) -> None:
        """
        Carry out the operation.

        `on_completion` must be called exactly once. Passing True tells the
        controller to stay in its processing state because more work is on its
        way.
        """
        logger.info(f"Executing client-operation {self.name}")
        on_completion(False)

    async def continue_operation(self, url: str, submitter: FormSubmitter) -> None:
        """Resume the operation with input that arrived from outside, such as a return URL."""
        logger.info(f"Handling URL with client-operation {self.name}: {url}")


class BankIdClientOperation(ClientOperation):
    """Launches the BankID app and continues with the success or error actions."""

    async def start(self, redirector: ContinueActionsHandler, on_completion: CompletionCallback) -> None:
        logger.info(f"Executing client-operation {self.name}")
        if self.href is None:
            logger.warning("No valid href in BankID client-operation arguments")
            on_completion(False)
            return

        success = await self.url_opener(self.href)
        if success:
            logger.debug("BankID successfully opened")
        else:
            logger.warning("BankID failed to open")

        actions = self.model.continue_actions if success else self.model.error_actions
        await redirector.handle_continue_actions(actions)

        # The continuation above has already been handed to the controller
        on_completion(True)


class ExternalBrowserClientOperation(ClientOperation):
    """Runs part of the flow in a browser that returns to `redirect_uri` with a resume nonce."""

    async def start(self, redirector: ContinueActionsHandler, on_completion: CompletionCallback) -> None:
        logger.info(f"Executing client-operation {self.name}")
        if self.href is None:
            logger.warning("No valid href in external-browser client-operation arguments")
            on_completion(False)
            return

        url = str(httpx.URL(self.href).copy_add_param("redirect_uri", self.redirect_uri))
        if await self.url_opener(url):
            logger.debug("Browser successfully opened")
        else:
            logger.warning("Browser failed to open")

        # Nothing more happens until the browser comes back through the redirect URI
        on_completion(False)

    async def continue_operation(self, url: str, submitter: FormSubmitter) -> None:
        logger.info(f"Handling URL with client-operation {self.name}: {url}")

        forms = [action.form for action in self.model.continue_actions]
        if len(forms) != 1 or forms[0] is None:
            raise InvalidClientOperationInputError(
                "external-browser client-operation had none or more than one continue actions"
            )

        nonce = parse_qs(urlparse(url).query).get(RESUME_NONCE_PARAMETER, [""])[0]
        if not nonce:
            raise InvalidClientOperationInputError(
                f"Invalid redirect URL received by external-browser client-operation: {url}"
            )

        await submitter.submit_form(forms[0], {RESUME_NONCE_PARAMETER: nonce})


ClientOperationFactory = Callable[[ClientOperationModel, UrlOpener, str], ClientOperation]

DEFAULT_CLIENT_OPERATIONS: dict[str, ClientOperationFactory] = {
    "bankid": BankIdClientOperation,
    "external-browser-flow": ExternalBrowserClientOperation,
}


class ClientOperationDispatcher:
    """Resolves the client operation of a step, if it has exactly one."""

    def __init__(
        self,
        url_opener: UrlOpener = open_in_browser,
        redirect_uri: str = "",
        operations: dict[str, ClientOperationFactory] | None = None,
    ):
        self.url_opener = url_opener
        self.redirect_uri = redirect_uri
        self._operations = dict(DEFAULT_CLIENT_OPERATIONS if operations is None else operations)

    def register(self, name: str, factory: ClientOperationFactory) -> None:
        self._operations[name] = factory

    def select_operation(self, actions: list[Action]) -> ClientOperation | None:
        models = [model for action in actions if (model := action.client_operation) is not None]

        if not models:
            logger.debug("No client-operations")
            return None

        if len(models) > 1:
            logger.warning("More than one client-operation found in actions list: not supported.")
            return None

        model = models[0]
        factory = self._operations.get(model.name)
        if factory is None:
            logger.warning(f"Unknown client-operation: {model.name}")
            return None

        operation = factory(model, self.url_opener, self.redirect_uri)
        logger.info(f"Active client-operation: {operation.name}")
        return operation
