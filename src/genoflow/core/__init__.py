"""Core module - exceptions and logging."""

from .exceptions import (
    GenoFlowException,
    ValidationError,
    NotFoundError,
    StorageError,
    ReferenceBuildError,
    ToolFailure,
    ShardFailure,
    GraphError,
    PipelineError,
    ContentFallback,
)
from .logging import (
    setup_logging,
    get_logger,
    bind_context,
    clear_context,
    stage_timer,
)

__all__ = [
    # Exceptions
    "GenoFlowException",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "ReferenceBuildError",
    "ToolFailure",
    "ShardFailure",
    "GraphError",
    "PipelineError",
    "ContentFallback",
    # Logging
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "stage_timer",
]
