"""
Shared error handling for the Rule Engine Platform.

The classes below follow the platform's error taxonomy: validation and
compilation errors are surfaced to the authoring caller, evaluation faults
and integration failures are recovered locally and folded into the
execution report, and fatal execution errors abort a run.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RuleEngineException(Exception):
    """Base exception for Rule Engine Platform services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RuleEngineException):
    """A rule model or request does not validate against its schemas."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "VALIDATION_ERROR"):
        super().__init__(code, message, details)


class PathNotFoundError(ValidationError):
    """A property path does not resolve within a schema."""

    def __init__(self, schema: str, path: str, details: Optional[Dict[str, Any]] = None):
        self.schema = schema
        self.path = path
        super().__init__(
            f"Path '{path}' not found in schema '{schema}'",
            details={"schema": schema, "path": path, **(details or {})},
            code="PATH_NOT_FOUND"
        )


class UnsatisfiableConstraintError(ValidationError):
    """Conditions cannot be satisfied by any single fact."""

    def __init__(self, message: str = "Rule conditions cannot be satisfied", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="UNSATISFIABLE_CONSTRAINTS")


class CompilationError(RuleEngineException):
    """A rule model cannot be turned into a compiled rule."""

    status_code = 422

    def __init__(self, message: str = "Rule compilation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("COMPILATION_ERROR", message, details)


class EvaluationFault(RuleEngineException):
    """A single rule or action failed while firing."""

    status_code = 500

    def __init__(self, message: str = "Rule evaluation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("EVALUATION_FAULT", message, details)


class IntegrationFailure(RuleEngineException):
    """An outbound integration call (webhook) failed."""

    status_code = 502

    def __init__(self, url: str, message: str = "Integration call failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTEGRATION_FAILURE", f"{url}: {message}", details)


class FatalExecutionError(RuleEngineException):
    """The whole execution cannot proceed."""

    status_code = 400

    def __init__(self, message: str = "Execution failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("FATAL_EXECUTION_ERROR", message, details)


class NotFoundError(RuleEngineException):
    """A referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: Any, details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", f"{entity} not found: {entity_id}", details)


class ExternalServiceError(RuleEngineException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
