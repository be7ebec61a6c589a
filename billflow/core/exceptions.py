"""Error taxonomy for the invoicing engine.

Every error carries a ``kind`` so the API layer can map it to a response
without inspecting messages:

    ValidationError          validation_error          400
    InvalidStateTransition   invalid_state_transition  400
    InvoiceNotFoundError     not_found                 404
    BusinessNotFoundError    not_found                 404
    ConflictError            conflict                  409
    TransientStorageError    storage_unavailable       503
"""
from typing import Any, Dict, List, Optional


class InvoiceEngineError(Exception):
    """Base exception for invoicing errors."""

    kind: str = "invoice_error"
    status_code: int = 400

    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(InvoiceEngineError):
    """Malformed or out-of-range input. Never retried."""

    kind = "validation_error"
    status_code = 400

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, details=field_errors or [])

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls("Validation failed", [{"field": field, "message": message}])

    @property
    def field_errors(self) -> List[Dict[str, str]]:
        return self.details


class InvalidStateTransition(InvoiceEngineError):
    """Edit, delete or status change attempted outside its legal state."""

    kind = "invalid_state_transition"
    status_code = 400

    def __init__(self, message: str, current_status: Optional[str] = None, target_status: Optional[str] = None):
        details = {"current_status": current_status}
        if target_status is not None:
            details["target_status"] = target_status
        super().__init__(message, details=details)
        self.current_status = current_status
        self.target_status = target_status


class InvoiceNotFoundError(InvoiceEngineError):
    kind = "not_found"
    status_code = 404


class BusinessNotFoundError(InvoiceEngineError):
    kind = "not_found"
    status_code = 404


class ConflictError(InvoiceEngineError):
    """Concurrent modification detected; the caller must reload and retry."""

    kind = "conflict"
    status_code = 409


class TransientStorageError(InvoiceEngineError):
    """Storage unavailable or contended. Retried with backoff before surfacing."""

    kind = "storage_unavailable"
    status_code = 503
