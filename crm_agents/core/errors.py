"""Error taxonomy shared by the orchestrator and its HTTP surface."""
from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for every error the orchestration layer reports."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        """Message safe to return to an HTTP caller."""
        return self.message


class ValidationError(OrchestratorError):
    """A request is missing a required field or carries an invalid value."""

    status_code = 400


class NotFoundError(OrchestratorError):
    """An unknown workflow, agent, task or execution id was referenced."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity.capitalize()} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class UpstreamError(OrchestratorError):
    """The external AI provider failed, timed out or is not configured."""

    status_code = 500

    @property
    def public_message(self) -> str:
        return "AI provider request failed"


class DeadlineExceeded(UpstreamError):
    """A dispatch ran past its deadline or was cancelled."""


class InternalError(OrchestratorError):
    """Anything unexpected raised while dispatching work."""

    @property
    def public_message(self) -> str:
        return "Internal error"
