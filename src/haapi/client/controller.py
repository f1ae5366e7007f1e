"""
HAAPI flow controller.

Drives a hypermedia authentication flow: it performs each HTTP step, reads the
returned representation, decides what happens next (follow a redirect, poll,
surface a problem, exchange the authorization code, or show the step) and
commits the resulting `FlowState` to its observers.

The controller must be used as an async context manager and from a single
task at a time. Only one network operation runs at once; calls made while one
is in flight are dropped, not queued.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType

import anyio
import httpx
from anyio.abc import TaskGroup

from haapi.client.client_operations import (
    ClientOperation,
    ClientOperationDispatcher,
    ClientOperationFactory,
    UrlOpener,
    open_in_browser,
)
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
from haapi.client.token_exchange import TokenExchange
from haapi.shared._httpx_utils import HaapiHttpClientFactory, create_haapi_http_client
from haapi.shared.errors import (
    HaapiFlowError,
    IllegalResetError,
    InvalidClientOperationInputError,
    InvalidConfigurationError,
    NoCurrentStateError,
    NoResponseBodyError,
    ServerError,
    TransportError,
)
from haapi.shared.problems import AuthorizationProblem, classify
from haapi.shared.representation import Action, FormModel, Link, Representation, RepresentationType, parse_representation
from haapi.shared.steps import OAuthAuthorizationResponse, PollingStatus, PollingStep, RedirectionStep

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[FlowState], None]
StateObserver = Callable[[FlowState], None]

# Steps the controller follows on its own before it has to show something
MAX_AUTOMATIC_STEPS = 20


def curate_form_parameters(form: FormModel, parameter_overrides: dict[str, str]) -> dict[str, str]:
    """Merge field defaults with caller-supplied values; overrides win."""
    parameters: dict[str, str] = {}
    remaining = dict(parameter_overrides)

    for field in form.fields:
        if field.name in remaining:
            parameters[field.name] = remaining.pop(field.name)
        elif field.value is not None:
            parameters[field.name] = field.value

    if remaining:
        logger.warning(f"Parameter overrides not consumed by any form field: {sorted(remaining)}")

    return parameters


class _OperationRedirector:
    """Continuation channel handed to a running client operation."""

    def __init__(self, controller: FlowController, generation: int):
        self._controller = controller
        self._generation = generation

    async def handle_continue_actions(self, actions: list[Action]) -> FlowState:
        return await self._controller._continue_with_actions(actions, self._generation, None)


class FlowController:
    """Owns the flow state and is the only place it changes."""

    def __init__(
        self,
        httpx_client_factory: HaapiHttpClientFactory = create_haapi_http_client,
        url_opener: UrlOpener = open_in_browser,
        client_operations: dict[str, ClientOperationFactory] | None = None,
    ):
        self.httpx_client_factory = httpx_client_factory
        self.dispatcher = ClientOperationDispatcher(url_opener=url_opener, operations=client_operations)

        self._state: FlowState = NoFlow()
        self._observers: list[StateObserver] = []
        self._is_processing = False
        self._client_operation: ClientOperation | None = None
        self._profile: Profile | None = None
        self._http_client: httpx.AsyncClient | None = None

        # Bumped by start() and reset(); work from an older generation is discarded
        self._generation = 0
        self._token_exchange_scope: anyio.CancelScope | None = None
        self._polling_scope: anyio.CancelScope | None = None
        self._task_group: TaskGroup | None = None

    async def __aenter__(self) -> FlowController:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        await self.reset()
        assert self._task_group is not None
        self._task_group.cancel_scope.cancel()
        try:
            return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self._task_group = None

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def profile(self) -> Profile | None:
        return self._profile

    @property
    def client_operation(self) -> ClientOperation | None:
        return self._client_operation

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Register an observer for every distinct committed state. Returns the unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # Public operations

    async def start(self, profile: Profile, completion_handler: CompletionHandler | None = None) -> FlowState:
        """Start a flow against the profile's authorization endpoint."""
        if self._task_group is None:
            raise RuntimeError("FlowController must be used as an async context manager")

        if self._is_processing:
            logger.error("The call is ignored because a start() was already triggered.")
            return self._state

        self._is_processing = True
        self._profile = profile
        # Anything still running for a previous flow must not touch this one
        self._generation += 1
        generation = self._generation

        try:
            profile.validate_endpoints()
            authorization_url = profile.authorization_url()
        except InvalidConfigurationError as e:
            return self._commit_state(SystemFailure(e), generation, completion_handler)

        logger.info("Starting HAAPI flow")
        await self._close_http_client()
        if not self._is_current(generation):
            return self._state
        self._http_client = self.httpx_client_factory(verify=not profile.trust_all_certificates)
        self.dispatcher.redirect_uri = profile.redirect_uri

        request = self._http_client.build_request("GET", authorization_url)
        return await self._call_haapi(request, [], generation, completion_handler, initial=True)

    async def submit_form(
        self,
        form: FormModel,
        parameter_overrides: dict[str, str] | None = None,
        completion_handler: CompletionHandler | None = None,
    ) -> FlowState:
        """Submit a form, with `parameter_overrides` taking precedence over field defaults."""
        generation = self._begin("submit_form")
        if generation is None:
            return self._state
        return await self._submit(form, parameter_overrides or {}, generation, completion_handler)

    async def follow_link(self, link: Link, completion_handler: CompletionHandler | None = None) -> FlowState:
        generation = self._begin("follow_link")
        if generation is None:
            return self._state

        if self._profile is None or self._http_client is None:
            return self._commit_state(SystemFailure(IllegalResetError()), generation, completion_handler)

        try:
            url = self._profile.url_relative_to_base(link.href)
        except InvalidConfigurationError as e:
            return self._commit_state(SystemFailure(e), generation, completion_handler)

        logger.info(f"Getting HAAPI link; url={url}")
        request = self._http_client.build_request("GET", url)
        return await self._call_haapi(request, [], generation, completion_handler)

    async def get_access_token(self, code: str, completion_handler: CompletionHandler | None = None) -> FlowState:
        """Exchange an authorization code for tokens."""
        generation = self._begin("get_access_token")
        if generation is None:
            return self._state
        return await self._exchange_code(code, generation, completion_handler)

    async def handle_continue_actions(
        self, actions: list[Action], completion_handler: CompletionHandler | None = None
    ) -> FlowState:
        """Continue the current step with actions supplied out of band, e.g. by a selector or client operation."""
        generation = self._begin("handle_continue_actions")
        if generation is None:
            return self._state
        return await self._continue_with_actions(actions, generation, completion_handler)

    async def handle_url(self, url: str) -> FlowState:
        """Route a URL that came back to the application to the active client operation."""
        operation = self._client_operation
        if operation is None:
            logger.warning(f"No active client-operation to handle URL: {url}")
            return self._state

        try:
            await operation.continue_operation(url, self)
        except InvalidClientOperationInputError as e:
            logger.error(f"Client-operation {operation.name} rejected URL: {e}")
        return self._state

    async def reset(self) -> None:
        """Abandon the current flow. Safe to call at any time, any number of times."""
        logger.info("Resetting HAAPI flow")
        self._generation += 1
        self._is_processing = False
        self._client_operation = None
        self._profile = None
        if self._token_exchange_scope is not None:
            self._token_exchange_scope.cancel()
            self._token_exchange_scope = None
        self._cancel_polling()
        await self._close_http_client()
        self._commit_state(NoFlow(), self._generation)

    # Request pipeline

    def _begin(self, operation: str) -> int | None:
        if self._is_processing:
            logger.warning(f"The call to {operation}() is ignored because another operation is in progress.")
            return None
        self._is_processing = True
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _close_http_client(self) -> None:
        if self._http_client is not None:
            http_client, self._http_client = self._http_client, None
            await http_client.aclose()

    async def _submit(
        self,
        form: FormModel,
        parameter_overrides: dict[str, str],
        generation: int,
        completion_handler: CompletionHandler | None,
        automatic_steps: int = 0,
    ) -> FlowState:
        if self._profile is None or self._http_client is None:
            return self._commit_state(SystemFailure(IllegalResetError()), generation, completion_handler)

        try:
            url = self._profile.url_relative_to_base(form.href)
        except InvalidConfigurationError as e:
            return self._commit_state(SystemFailure(e), generation, completion_handler)

        parameters = curate_form_parameters(form, parameter_overrides)
        method = form.method.upper()
        if method == "GET":
            # Keep the query already on the href; `params=` would replace it
            request = self._http_client.build_request(method, httpx.URL(url).copy_merge_params(parameters))
        else:
            request = self._http_client.build_request(method, url, data=parameters)

        logger.info(f"Submitting HAAPI form; url={url}, parameters={sorted(parameters)}")
        return await self._call_haapi(
            request, form.continue_actions, generation, completion_handler, automatic_steps=automatic_steps
        )

    async def _call_haapi(
        self,
        request: httpx.Request,
        continue_actions: list[Action],
        generation: int,
        completion_handler: CompletionHandler | None,
        initial: bool = False,
        automatic_steps: int = 0,
    ) -> FlowState:
        assert self._http_client is not None
        try:
            response = await self._http_client.send(request)
        except httpx.HTTPError as e:
            logger.error(f"HTTP error for {request.method} {request.url}: {e}")
            return self._commit_state(SystemFailure(TransportError(e)), generation, completion_handler)

        if not self._is_current(generation):
            logger.warning(f"Discarding response for {request.url}: the flow was reset")
            return self._state

        try:
            representation = self._read_representation(response, initial)
        except HaapiFlowError as e:
            return self._commit_state(SystemFailure(e), generation, completion_handler)

        return await self._process_representation(
            representation, continue_actions, generation, completion_handler, automatic_steps
        )

    def _read_representation(self, response: httpx.Response, initial: bool) -> Representation:
        # Problems arrive as 4xx documents, except on the very first request
        if (initial and response.status_code != 200) or response.status_code >= 500:
            raise ServerError(response.status_code)
        if not response.content:
            raise NoResponseBodyError()

        logger.debug(f"Representation received: {response.text}")
        return parse_representation(response.content)

    async def _process_representation(
        self,
        representation: Representation,
        continue_actions: list[Action],
        generation: int,
        completion_handler: CompletionHandler | None,
        automatic_steps: int,
    ) -> FlowState:
        assert self._profile is not None
        follow_redirects = self._profile.follow_redirects

        if (problem := classify(representation)) is not None:
            match problem:
                case AuthorizationProblem():
                    logger.debug("AuthorizationProblem detected -> abort")
                    return self._commit_state(SystemFailure(problem.error), generation, completion_handler)
                case _:
                    logger.debug("Will commit problem")
                    return self._commit_state(
                        ProblemState(problem),
                        generation,
                        completion_handler,
                        self.dispatcher.select_operation(representation.actions),
                    )

        if representation.step_type is RepresentationType.CONTINUE_SAME_STEP:
            logger.debug("Will commit continue state")
            return self._commit_continue_state(continue_actions, generation, completion_handler)

        polling_step = PollingStep.from_representation(representation)

        if follow_redirects:
            if (redirection := RedirectionStep.from_representation(representation)) is not None:
                logger.debug("Following redirect")
                return await self._follow(redirection.redirect_form, generation, completion_handler, automatic_steps)

            if polling_step is not None:
                match polling_step.status:
                    case PollingStatus.PENDING:
                        logger.debug("Will commit polling")
                        return self._commit_state(
                            Polling(polling_step),
                            generation,
                            completion_handler,
                            self.dispatcher.select_operation(representation.actions),
                        )
                    case PollingStatus.DONE | PollingStatus.FAILED:
                        if (form := polling_step.form_model) is not None:
                            logger.debug(f"Following polling result: {polling_step.status.value}")
                            return await self._follow(form, generation, completion_handler, automatic_steps)
                        return self._commit_next(representation, generation, completion_handler)
                    case PollingStatus.UNKNOWN:
                        pass

        if (authorization := OAuthAuthorizationResponse.from_representation(representation)) is not None:
            if follow_redirects:
                logger.debug("Following authorization response")
                self._client_operation = None
                return await self._exchange_code(authorization.code, generation, completion_handler)

            logger.debug("Will commit authorization response")
            return self._commit_state(
                AuthorizationResponse(authorization),
                generation,
                completion_handler,
                self.dispatcher.select_operation(representation.actions),
            )

        if polling_step is not None and not follow_redirects:
            logger.debug("Will commit polling - no redirect")
            return self._commit_state(
                Polling(polling_step),
                generation,
                completion_handler,
                self.dispatcher.select_operation(representation.actions),
            )

        logger.debug(f"Will commit representation type: {representation.type}")
        return self._commit_next(representation, generation, completion_handler)

    async def _follow(
        self,
        form: FormModel,
        generation: int,
        completion_handler: CompletionHandler | None,
        automatic_steps: int,
    ) -> FlowState:
        if automatic_steps >= MAX_AUTOMATIC_STEPS:
            logger.error(f"Stopped after {MAX_AUTOMATIC_STEPS} automatic steps; last href={form.href}")
            error = httpx.TooManyRedirects("Exceeded maximum allowed redirects.")
            return self._commit_state(SystemFailure(TransportError(error)), generation, completion_handler)
        return await self._submit(form, {}, generation, completion_handler, automatic_steps + 1)

    async def _continue_with_actions(
        self, actions: list[Action], generation: int, completion_handler: CompletionHandler | None
    ) -> FlowState:
        if not self._is_current(generation):
            logger.warning("Discarding continue actions: the flow was reset")
            return self._state

        if (
            self._profile is not None
            and self._profile.follow_redirects
            and len(actions) == 1
            and (redirection := RedirectionStep.from_action(actions[0])) is not None
        ):
            logger.debug("Following redirect")
            return await self._submit(redirection.redirect_form, {}, generation, completion_handler)

        return self._commit_continue_state(actions, generation, completion_handler)

    async def _exchange_code(
        self, code: str, generation: int, completion_handler: CompletionHandler | None
    ) -> FlowState:
        if self._profile is None or self._http_client is None:
            return self._commit_state(SystemFailure(IllegalResetError()), generation, completion_handler)

        exchange = TokenExchange(self._profile, self._http_client)
        with anyio.CancelScope() as scope:
            self._token_exchange_scope = scope
            try:
                tokens = await exchange.exchange(code)
            except HaapiFlowError as e:
                return self._commit_state(SystemFailure(e), generation, completion_handler)
            finally:
                if self._token_exchange_scope is scope:
                    self._token_exchange_scope = None
            return self._commit_state(AccessToken(tokens), generation, completion_handler)

        logger.info("Token exchange was cancelled")
        return self._state

    # Commit pipeline

    def _commit_next(
        self, representation: Representation, generation: int, completion_handler: CompletionHandler | None
    ) -> FlowState:
        return self._commit_state(
            NextStep(StepContent.of(representation)),
            generation,
            completion_handler,
            self.dispatcher.select_operation(representation.actions),
        )

    def _commit_continue_state(
        self, actions: list[Action], generation: int, completion_handler: CompletionHandler | None
    ) -> FlowState:
        match self._state:
            case NextStep(content=content):
                return self._commit_state(
                    NextStep(StepContent(representation=content.representation, actions=actions)),
                    generation,
                    completion_handler,
                    self.dispatcher.select_operation(actions),
                )
            case _:
                return self._commit_state(SystemFailure(NoCurrentStateError()), generation, completion_handler)

    def _commit_state(
        self,
        state: FlowState,
        generation: int,
        completion_handler: CompletionHandler | None = None,
        client_operation: ClientOperation | None = None,
    ) -> FlowState:
        """The single place where the flow state changes."""
        if not self._is_current(generation):
            logger.warning(f"Discarding {type(state).__name__} state: the flow was reset")
            return self._state

        self._cancel_polling()
        self._client_operation = client_operation
        self._is_processing = False
        if client_operation is not None:
            self._start_client_operation(client_operation, generation)

        logger.debug(f"Commit state: {type(state).__name__}")
        if completion_handler is not None:
            completion_handler(state)

        if state != self._state:
            self._state = state
            for observer in list(self._observers):
                observer(state)

        match state:
            case Polling(step=step) if step.status is PollingStatus.PENDING:
                if self._profile is not None and self._profile.automatic_polling:
                    self._schedule_polling(step, self._profile.polling_interval, generation)
            case _:
                pass

        return state

    # Background work

    def _start_client_operation(self, operation: ClientOperation, generation: int) -> None:
        assert self._task_group is not None
        # Held until the operation reports back
        self._is_processing = True

        def on_completion(remain_transitioning: bool) -> None:
            if remain_transitioning or not self._is_current(generation):
                return
            if self._client_operation is operation:
                self._is_processing = False

        self._task_group.start_soon(self._run_client_operation, operation, on_completion, generation)

    async def _run_client_operation(
        self, operation: ClientOperation, on_completion: Callable[[bool], None], generation: int
    ) -> None:
        try:
            await operation.start(_OperationRedirector(self, generation), on_completion)
        except Exception as e:
            logger.exception(f"Client-operation {operation.name} failed")
            self._commit_state(SystemFailure(e), generation)

    def _schedule_polling(self, step: PollingStep, interval: float, generation: int) -> None:
        assert self._task_group is not None
        self._cancel_polling()
        scope = anyio.CancelScope()
        self._polling_scope = scope
        self._task_group.start_soon(self._poll, step, interval, scope, generation)

    def _cancel_polling(self) -> None:
        if self._polling_scope is not None:
            self._polling_scope.cancel()
            self._polling_scope = None

    async def _poll(self, step: PollingStep, interval: float, scope: anyio.CancelScope, generation: int) -> None:
        with scope:
            while True:
                await anyio.sleep(interval)
                if not self._is_current(generation) or self._polling_scope is not scope:
                    return
                if self._is_processing:
                    continue
                form = step.poll_form
                if form is None:
                    logger.warning("Polling step has no poll action; automatic polling stopped")
                    return

                # Leaving this scope; the commit below schedules the next poll if still pending
                self._polling_scope = None
                logger.debug("Automatic poll")
                await self.submit_form(form)
                return
