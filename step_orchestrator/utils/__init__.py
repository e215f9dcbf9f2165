"""
Utilities module - Logging, errors and rate limiting
"""

# Exception hierarchy first: config modules import it while this package initializes
from .exceptions import (
    OrchestratorError,
    ConfigurationError,
    MissingDependencyError,
    ValidationError,
    InvalidParameterError,
    NotFoundError,
    TaskNotFoundError,
    ProjectNotFoundError,
    InvariantViolation,
    InvalidTransitionError,
    StoreInvariantError,
    DelegationInvariantViolation,
    ExecutionError,
    UnregisteredStepType,
    ExecutorThrew,
    PlanningError,
    LLMError,
    OrphanedChildProject,
    wrap_exception,
)
from .logger import get_logger, initialize_logging
from .rate_limiter import RateLimiter, global_rate_limiter

__all__ = [
    'get_logger',
    'initialize_logging',
    'RateLimiter',
    'global_rate_limiter',
    'OrchestratorError',
    'ConfigurationError',
    'MissingDependencyError',
    'ValidationError',
    'InvalidParameterError',
    'NotFoundError',
    'TaskNotFoundError',
    'ProjectNotFoundError',
    'InvariantViolation',
    'InvalidTransitionError',
    'StoreInvariantError',
    'DelegationInvariantViolation',
    'ExecutionError',
    'UnregisteredStepType',
    'ExecutorThrew',
    'PlanningError',
    'LLMError',
    'OrphanedChildProject',
    'wrap_exception',
]
