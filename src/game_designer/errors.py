"""
Error taxonomy for the game designer server.

Every failure a tool call can report is a ``DesignerError`` subclass with a
stable ``code`` (surfaced to the agent) and a ``retryable`` flag:

- caller errors (state machine violations, bad arguments) are detected
  locally, never mutate state, and are not worth retrying unchanged
- oracle and persistence errors are retryable by the caller; a failed call
  never leaves a partially applied session behind
"""

from __future__ import annotations


class DesignerError(Exception):
    """Base exception for all errors surfaced through the tool surface."""

    code: str = "DesignerError"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class SessionNotFound(DesignerError):
    code = "SessionNotFound"

    def __init__(self, session_name: str) -> None:
        super().__init__(f"Session '{session_name}' not found.")
        self.session_name = session_name


class SessionAlreadyExists(DesignerError):
    code = "SessionAlreadyExists"

    def __init__(self, session_name: str) -> None:
        super().__init__(f"Session '{session_name}' already exists.")
        self.session_name = session_name


class InvalidStateTransition(DesignerError):
    code = "InvalidStateTransition"


class FeatureAlreadyInProgress(DesignerError):
    code = "FeatureAlreadyInProgress"


class InvalidToolArguments(DesignerError):
    code = "InvalidToolArguments"


class OracleError(DesignerError):
    """Base class for failures of the oracle round trip."""

    code = "OracleError"
    retryable = True


class OracleTimeout(OracleError):
    code = "OracleTimeout"


class OracleUnreachable(OracleError):
    code = "OracleUnreachable"


class OracleProtocolError(OracleError):
    code = "OracleProtocolError"


class PersistenceError(DesignerError):
    code = "PersistenceError"
    retryable = True
