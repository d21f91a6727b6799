"""Exception types raised by the orchestration core."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for all orchestrator errors."""


class SessionNotFoundError(OrchestrationError):
    """No session record exists for the requested id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotResumableError(OrchestrationError):
    """The session is terminal (or otherwise not in a resumable status)."""

    def __init__(self, session_id: str, status: str, state: str):
        super().__init__(
            f"Session {session_id} cannot be resumed "
            f"(status={status}, state={state}). Start a new session instead."
        )
        self.session_id = session_id
        self.status = status
        self.state = state


class SessionStoreError(OrchestrationError):
    """Persisting or reading a session record failed after retries."""


class SchemaVersionError(SessionStoreError):
    """A session record was written by an unknown (newer) schema version."""

    def __init__(self, path: str, found: int, supported: int):
        super().__init__(
            f"Session record {path} has schema version {found}, "
            f"but this build only understands versions <= {supported}. "
            f"Upgrade auto-ml-orchestrator to read it."
        )
        self.found = found
        self.supported = supported


class StageCancelledError(OrchestrationError):
    """Raised inside a stage when the caller's cancellation signal fires."""


class CollaboratorError(OrchestrationError):
    """An external collaborator returned something the core cannot use."""


class RuleApplicationError(ValueError):
    """A preprocessing rule could not transform a value."""
