"""
Standardized Exception Hierarchy for the Step Orchestrator

This module provides the exception hierarchy used across the store, the
execution loop, the delegation coordinator and the executors.

Exception Categories:
- Configuration Errors: Issues with settings, environment, or initialization
- Validation Errors: Input validation failures
- Lookup Errors: Missing tasks or projects
- Invariant Violations: Store / delegation invariants that must abort the operation
- Execution Errors: Step-level failures that are recovered into a StepResult

Usage:
    from step_orchestrator.utils.exceptions import (
        OrchestratorError,
        UnregisteredStepType,
        DelegationInvariantViolation
    )

    try:
        result = registry.execute(step_type, params)
    except UnregisteredStepType as e:
        logger.error(str(e))
"""

from typing import Optional, Any, Dict, List


# ============================================================================
# Base Exception
# ============================================================================

class OrchestratorError(Exception):
    """
    Base exception for all Step Orchestrator errors.

    All custom exceptions inherit from this class to enable
    centralized error handling and logging.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            error_code: Optional error code for categorization
            details: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        """String representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ============================================================================
# Configuration and Initialization Errors
# ============================================================================

class ConfigurationError(OrchestratorError):
    """Raised when there's an issue with configuration or settings."""

    def __init__(
        self,
        setting_name: str,
        message: str,
        expected_value: Optional[Any] = None,
        actual_value: Optional[Any] = None
    ):
        details = {"setting_name": setting_name}
        if expected_value is not None:
            details["expected_value"] = str(expected_value)
        if actual_value is not None:
            details["actual_value"] = str(actual_value)

        super().__init__(
            message=f"Configuration error for '{setting_name}': {message}",
            error_code="CONFIG_ERROR",
            details=details
        )
        self.setting_name = setting_name


class MissingDependencyError(OrchestratorError):
    """Raised when a required dependency is not installed."""

    def __init__(
        self,
        package_name: str,
        install_command: Optional[str] = None,
        purpose: Optional[str] = None
    ):
        message = f"Required package '{package_name}' is not installed"
        if purpose:
            message += f" (needed for {purpose})"
        if install_command:
            message += f"\nInstall with: {install_command}"

        super().__init__(
            message=message,
            error_code="MISSING_DEPENDENCY",
            details={
                "package_name": package_name,
                "install_command": install_command,
                "purpose": purpose
            }
        )
        self.package_name = package_name


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(OrchestratorError):
    """Base class for validation errors."""
    pass


class InvalidParameterError(ValidationError):
    """Raised when a parameter value is invalid."""

    def __init__(
        self,
        parameter_name: str,
        message: str,
        expected_type: Optional[str] = None,
        actual_value: Optional[Any] = None
    ):
        details = {"parameter_name": parameter_name}
        if expected_type:
            details["expected_type"] = expected_type
        if actual_value is not None:
            details["actual_value"] = str(actual_value)

        super().__init__(
            message=f"Invalid parameter '{parameter_name}': {message}",
            error_code="INVALID_PARAM",
            details=details
        )
        self.parameter_name = parameter_name


# ============================================================================
# Lookup Errors
# ============================================================================

class NotFoundError(OrchestratorError):
    """Base class for missing entities."""
    pass


class TaskNotFoundError(NotFoundError):
    """Raised when a task id does not resolve."""

    def __init__(self, task_id: str):
        super().__init__(
            message=f"Task {task_id} not found",
            error_code="TASK_NOT_FOUND",
            details={"task_id": task_id}
        )
        self.task_id = task_id


class ProjectNotFoundError(NotFoundError):
    """Raised when a project id does not resolve."""

    def __init__(self, project_id: str):
        super().__init__(
            message=f"Project {project_id} not found",
            error_code="PROJECT_NOT_FOUND",
            details={"project_id": project_id}
        )
        self.project_id = project_id


# ============================================================================
# Invariant Violations (never recovered)
# ============================================================================

class InvariantViolation(OrchestratorError):
    """
    Base class for store and delegation invariant violations.

    These abort the current operation. The event bus re-raises them
    instead of parking them in its dead letter queue.
    """
    pass


class InvalidTransitionError(InvariantViolation):
    """Raised when a task status change would move backwards or skip a child project."""

    def __init__(self, task_id: str, from_status: str, to_status: str, reason: Optional[str] = None):
        message = f"Illegal transition for task {task_id}: {from_status} -> {to_status}"
        if reason:
            message += f" ({reason})"
        super().__init__(
            message=message,
            error_code="INVALID_TRANSITION",
            details={
                "task_id": task_id,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason
            }
        )
        self.task_id = task_id


class StoreInvariantError(InvariantViolation):
    """Raised when a store-level structural invariant would be broken."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="STORE_INVARIANT",
            details=details
        )


class DelegationInvariantViolation(InvariantViolation):
    """Raised when a delegated project is not linked back to the delegating task."""

    def __init__(
        self,
        task_id: str,
        project_id: Optional[str],
        actual_parent_task_id: Optional[str] = None,
        message: Optional[str] = None
    ):
        default_message = (
            f"Project {project_id} is not a delegation of task {task_id} "
            f"(parent_task_id={actual_parent_task_id})"
        )
        super().__init__(
            message=message or default_message,
            error_code="DELEGATION_INVARIANT",
            details={
                "task_id": task_id,
                "project_id": project_id,
                "actual_parent_task_id": actual_parent_task_id
            }
        )
        self.task_id = task_id
        self.project_id = project_id


# ============================================================================
# Execution Errors
# ============================================================================

class ExecutionError(OrchestratorError):
    """Base class for execution-time errors."""
    pass


class UnregisteredStepType(ExecutionError):
    """Raised when no executor handles the requested step type."""

    def __init__(self, step_type: str, registered_types: Optional[List[str]] = None):
        message = f"Step type '{step_type}' not supported. Only use available types."
        super().__init__(
            message=message,
            error_code="UNREGISTERED_STEP_TYPE",
            details={
                "step_type": step_type,
                "registered_types": registered_types or []
            }
        )
        self.step_type = step_type


class ExecutorThrew(ExecutionError):
    """Raised (and caught at the loop boundary) when an executor fails."""

    def __init__(
        self,
        step_type: str,
        task_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        message = f"Executor for step '{step_type}' failed"
        if original_error:
            message += f"\nCaused by: {str(original_error)}"
        super().__init__(
            message=message,
            error_code="EXECUTOR_THREW",
            details={
                "step_type": step_type,
                "task_id": task_id,
                "original_error": str(original_error) if original_error else None
            }
        )
        self.step_type = step_type
        self.task_id = task_id
        self.original_error = original_error


class PlanningError(ExecutionError):
    """Raised when a planner cannot produce a usable step sequence."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(
            message=f"Planning failed: {message}",
            error_code="PLANNING_ERROR",
            details={"raw_response": raw_response[:500] if raw_response else None}
        )
        self.raw_response = raw_response


class LLMError(ExecutionError):
    """Raised when LLM operations fail."""

    def __init__(
        self,
        provider: str,
        message: str,
        model: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        full_message = f"LLM error with provider '{provider}': {message}"
        if model:
            full_message += f" (model: {model})"
        if original_error:
            full_message += f"\nCaused by: {str(original_error)}"

        super().__init__(
            message=full_message,
            error_code="LLM_ERROR",
            details={
                "provider": provider,
                "model": model,
                "original_error": str(original_error) if original_error else None
            }
        )
        self.provider = provider
        self.model = model


class OrphanedChildProject(ExecutionError):
    """Describes a delegation whose child project never reached a terminal state."""

    def __init__(self, task_id: str, project_id: str, waited_seconds: Optional[float] = None):
        message = f"Child project {project_id} of task {task_id} never completed"
        if waited_seconds is not None:
            message += f" (waited {waited_seconds:.0f}s)"
        super().__init__(
            message=message,
            error_code="ORPHANED_CHILD_PROJECT",
            details={
                "task_id": task_id,
                "project_id": project_id,
                "waited_seconds": waited_seconds
            }
        )
        self.task_id = task_id
        self.project_id = project_id


# ============================================================================
# Convenience Functions
# ============================================================================

def wrap_exception(
    original_error: Exception,
    operation: str,
    context: Optional[Dict[str, Any]] = None
) -> OrchestratorError:
    """
    Wrap a generic exception in an appropriate orchestrator exception.

    Args:
        original_error: The original exception to wrap
        operation: The operation that was being performed (usually the step type)
        context: Additional context about the error

    Returns:
        An appropriate OrchestratorError subclass
    """
    context = context or {}

    if isinstance(original_error, OrchestratorError):
        return original_error

    if isinstance(original_error, ImportError):
        return MissingDependencyError(
            package_name=context.get("package_name", "unknown"),
            purpose=operation,
            install_command=context.get("install_command")
        )

    if isinstance(original_error, ValueError):
        return InvalidParameterError(
            parameter_name=context.get("parameter_name", "unknown"),
            message=str(original_error)
        )

    return ExecutorThrew(
        step_type=operation,
        task_id=context.get("task_id"),
        original_error=original_error
    )


__all__ = [
    "OrchestratorError",
    "ConfigurationError",
    "MissingDependencyError",
    "ValidationError",
    "InvalidParameterError",
    "NotFoundError",
    "TaskNotFoundError",
    "ProjectNotFoundError",
    "InvariantViolation",
    "InvalidTransitionError",
    "StoreInvariantError",
    "DelegationInvariantViolation",
    "ExecutionError",
    "UnregisteredStepType",
    "ExecutorThrew",
    "PlanningError",
    "LLMError",
    "OrphanedChildProject",
    "wrap_exception",
]
