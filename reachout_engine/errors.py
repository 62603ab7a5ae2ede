"""
Error taxonomy for the workflow engine.

Per-entity errors (GraphError, ProviderError, ...) are caught by the state
machine and dispatch layers and recorded on the Execution or Message row.
Only boundary errors (AuthorizationError, SignatureError, ValidationError on
request payloads) surface as HTTP errors.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for engine errors with a stable error code."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(EngineError):
    """Bad input. Never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(EngineError):
    """A referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity_kind: str, entity_id: str):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        super().__init__(
            f"{entity_kind} '{entity_id}' not found",
            {"entity_kind": entity_kind, "entity_id": entity_id},
        )


class GraphError(EngineError):
    """Dangling node reference or missing edge for a chosen branch."""

    code = "GRAPH_ERROR"


class GraphCycleError(GraphError):
    """The per-tick node iteration cap was exceeded."""

    code = "GRAPH_CYCLE"


class ProviderError(EngineError):
    """A channel provider rejected or failed a send."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        provider_code: Optional[str] = None,
    ):
        self.provider = provider
        self.provider_code = provider_code
        details = {}
        if provider:
            details["provider"] = provider
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, details)


class AuthorizationError(EngineError):
    """Caller is not trusted. Raised before any read or write."""

    code = "UNAUTHORIZED"


class SignatureError(EngineError):
    """Webhook signature missing or invalid. Raised before any mutation."""

    code = "INVALID_SIGNATURE"
