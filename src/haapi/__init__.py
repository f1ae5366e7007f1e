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

__all__ = [
    "AccessToken",
    "AuthorizationResponse",
    "FlowController",
    "FlowState",
    "NextStep",
    "NoFlow",
    "Polling",
    "ProblemState",
    "Profile",
    "StepContent",
    "SystemFailure",
]
