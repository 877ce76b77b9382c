"""External tool invocation."""

from .adapter import CommandTemplate, ToolAdapter, validate_command_args

__all__ = ["CommandTemplate", "ToolAdapter", "validate_command_args"]
