"""GenoFlow custom exceptions."""

from dataclasses import dataclass
from typing import Any


# ─────────────────────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────────────────────

class GenoFlowException(Exception):
    """Base exception for GenoFlow."""

    def __init__(
        self,
        message: str,
        code: str = "GENOFLOW_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(GenoFlowException):
    """Bad or missing run parameter."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        errors: list[dict[str, str]] | None = None,
    ):
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if errors:
            details["errors"] = errors
        super().__init__(message=message, code="VALIDATION_ERROR", details=details)
        self.field = field
        self.errors = errors or []


class NotFoundError(GenoFlowException):
    """Artifact or resource not found."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)},
        )


class StorageError(GenoFlowException):
    """Artifact store operation error."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(
            message=message,
            code="STORAGE_ERROR",
            details={"path": path} if path else {},
        )


class ReferenceBuildError(GenoFlowException):
    """Fetching or indexing the reference genome failed."""

    def __init__(self, message: str, version: str | None = None):
        super().__init__(
            message=message,
            code="REFERENCE_BUILD_ERROR",
            details={"version": version} if version else {},
        )
        self.version = version


class ToolFailure(GenoFlowException):
    """External command exited non-zero or did not produce its outputs."""

    def __init__(
        self,
        tool: str,
        exit_code: int,
        diagnostics: str = "",
        message: str | None = None,
    ):
        super().__init__(
            message=message or f"{tool} failed with exit code {exit_code}",
            code="TOOL_FAILURE",
            details={"tool": tool, "exit_code": exit_code, "diagnostics": diagnostics},
        )
        self.tool = tool
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class ShardFailure(GenoFlowException):
    """A scatter shard did not complete before gather."""

    def __init__(self, shard_key: str, reason: str = "shard did not complete"):
        super().__init__(
            message=f"Shard {shard_key}: {reason}",
            code="SHARD_FAILURE",
            details={"shard": shard_key},
        )
        self.shard_key = shard_key


class GraphError(GenoFlowException):
    """Invalid stage graph (cycle, missing producer, duplicate names)."""

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(
            message=message,
            code="GRAPH_ERROR",
            details={"stage": stage} if stage else {},
        )
        self.stage = stage


class PipelineError(GenoFlowException):
    """Pipeline execution error."""

    def __init__(self, message: str, step: str | None = None):
        super().__init__(
            message=message,
            code="PIPELINE_ERROR",
            details={"step": step} if step else {},
        )
        self.step = step


# ─────────────────────────────────────────────────────────────────────────────
# Recognised degenerate inputs
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ContentFallback:
    """
    Not an error: a stage recognised a degenerate input and substituted
    documented behaviour (pass-through, unfiltered set, ...).
    """

    stage: str
    reason: str
    action: str

    def __str__(self) -> str:
        return f"{self.stage}: {self.reason} -> {self.action}"
