"""
Knowledge Hub - Error Taxonomy

Errors raised by the admission gate, governance workflow and migration engine.

Per-record errors (ValidationError, DuplicateError) are data-level problems:
they are surfaced synchronously on interactive submissions and converted into
job log entries during migrations. Systemic errors (ConnectorFault,
RegistryFault, AdmissionFault) terminate a running migration as Failed.
"""

from typing import Any, Dict, List, Optional


class KnowledgeHubError(Exception):
    """Base class for all Knowledge Hub errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message}


class ValidationError(KnowledgeHubError):
    """A candidate or request is malformed. Lists every violated field."""

    def __init__(self, fields: Dict[str, str], message: Optional[str] = None):
        self.fields = dict(fields)
        if message is None:
            message = "Validation failed: " + "; ".join(
                f"{name}: {reason}" for name, reason in self.fields.items()
            )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errors"] = self.fields
        return result


class DuplicateError(KnowledgeHubError):
    """A candidate is too similar to existing accepted content."""

    def __init__(self, score: float, matches: List[Dict[str, Any]]):
        self.score = score
        self.matches = list(matches)
        super().__init__(f"Duplicate content detected (similarity {score:.2f})")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["similarity_score"] = self.score
        result["matches"] = self.matches
        return result


class InvalidStateError(KnowledgeHubError):
    """An operation is illegal for the current state of a migration job."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class InvalidTransitionError(KnowledgeHubError):
    """A governance transition is illegal for the record's current status."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class NotFoundError(KnowledgeHubError):
    """A content record or migration job does not exist."""


class AuthorizationError(KnowledgeHubError):
    """The acting user lacks the capability an action requires."""


class ConnectorFault(KnowledgeHubError):
    """The source system of a migration cannot be reached or read."""


class RegistryFault(KnowledgeHubError):
    """The job registry (persistence) is unavailable."""


class AdmissionFault(KnowledgeHubError):
    """The admission gate failed internally (not caused by the candidate)."""
