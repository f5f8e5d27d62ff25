"""Application layer."""

from agent_session_bridge.application.authorization import (
    AuthorizationPhase,
    KeywordPermissionDetector,
    PermissionAuthorizationStateMachine,
    PermissionSignalDetector,
    StructuredPermissionDetector,
)
from agent_session_bridge.application.errors import ErrorKind, OrchestratorError
from agent_session_bridge.application.models import (
    ContinueDirective,
    PermissionRequest,
    Session,
    StreamInput,
    StreamOutcome,
)
from agent_session_bridge.application.orchestrator import (
    AgentStreamClient,
    SessionOrchestrator,
    SessionStore,
)
from agent_session_bridge.application.result import Err, Ok, Result

__all__ = [
    "AgentStreamClient",
    "AuthorizationPhase",
    "ContinueDirective",
    "Err",
    "ErrorKind",
    "KeywordPermissionDetector",
    "Ok",
    "OrchestratorError",
    "PermissionAuthorizationStateMachine",
    "PermissionRequest",
    "PermissionSignalDetector",
    "Result",
    "Session",
    "SessionOrchestrator",
    "SessionStore",
    "StreamInput",
    "StreamOutcome",
    "StructuredPermissionDetector",
]
