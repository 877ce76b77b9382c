"""
External Tool Adapter

Runs one external collaborator (bcftools, GATK, VEP, scoring scripts, ...)
from a fixed argument template:

- placeholder substitution from input artifact paths, declared output names
  and run parameters
- argument validation (no shell metacharacters, no shell at all)
- a fresh working directory per invocation
- optional container isolation
- exit status mapping: anything but 0 is a ``ToolFailure`` carrying the tail
  of the combined output

The adapter knows nothing about tool semantics. Stage-specific shortcuts
(pass-through of non-gVCF input, unfiltered fallback, ...) are checked by the
stages around the call.
"""

from __future__ import annotations

import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from ..config.settings import ToolSettings
from ..core.exceptions import PipelineError, ToolFailure
from ..core.logging import get_logger

logger = get_logger(__name__)

DANGEROUS_CHARS = frozenset({";", "&", "|", "`", "$", "<", ">"})


@dataclass(frozen=True)
class CommandTemplate:
    """
    Fixed command contract of an external tool.

    Args:
        tool: Key of the command prefix in ``ToolSettings``
        args: Argument template; ``{name}`` is replaced by an input path,
            a declared output path or a run parameter
        outputs: Declared output name -> file name expected in the working
            directory after a zero exit code
        stdout: Optional declared output that receives the tool's stdout
    """

    tool: str
    args: Tuple[str, ...]
    outputs: Mapping[str, str] = field(default_factory=dict)
    stdout: Optional[str] = None


def validate_command_args(args: list[str]) -> list[str]:
    """
    Validate command-line arguments.

    Raises:
        PipelineError: If an argument is not a string or contains shell
            metacharacters
    """
    for arg in args:
        if not isinstance(arg, str):
            raise PipelineError(f"Argument must be string, got {type(arg)}")
        if any(char in arg for char in DANGEROUS_CHARS):
            raise PipelineError(f"Argument contains dangerous shell characters: {arg}")
    return args


def tail(text: str, lines: int) -> str:
    return "\n".join(text.splitlines()[-lines:])


class ToolAdapter:
    """Invokes external tools for pipeline stages."""

    def __init__(self, tools: ToolSettings):
        self.tools = tools

    def render(
        self,
        template: CommandTemplate,
        values: Mapping[str, Any],
    ) -> list[str]:
        """Substitute ``values`` into the template and prepend the tool prefix."""
        try:
            args = [arg.format_map(values) for arg in template.args]
        except KeyError as exc:
            raise PipelineError(
                f"Template for {template.tool} references unknown value {exc}",
                step=template.tool,
            ) from exc
        try:
            prefix = self.tools.command(template.tool)
        except KeyError as exc:
            raise PipelineError(str(exc), step=template.tool) from exc
        return prefix + validate_command_args(args)

    @staticmethod
    def _read_only_mounts(inputs: Mapping[str, Path], params: Mapping[str, Any]) -> list[str]:
        """Directories the tool reads: input parents and any existing path among ``params``."""
        mounts = {str(Path(p).resolve().parent) for p in inputs.values()}
        for value in params.values():
            if not isinstance(value, (str, Path)) or not Path(value).is_absolute():
                continue
            path = Path(value).resolve()
            if path.is_dir():
                mounts.add(str(path))
            elif path.is_file():
                mounts.add(str(path.parent))
        return sorted(mounts)

    def _wrap_container(
        self,
        command: list[str],
        work_dir: Path,
        inputs: Mapping[str, Path],
        params: Optional[Mapping[str, Any]] = None,
    ) -> list[str]:
        """Wrap the command in ``docker run`` with everything it reads mounted read-only."""
        cmd = ["docker", "run", "--rm", "--network", "none"]
        mounts = self._read_only_mounts(inputs, params or {})
        for mount in mounts:
            cmd.extend(["-v", f"{mount}:{mount}:ro"])
        cmd.extend(["-v", f"{work_dir}:{work_dir}:rw", "-w", str(work_dir)])
        cmd.append(self.tools.container_image)
        cmd.extend(command)
        return cmd

    def invoke(
        self,
        template: CommandTemplate,
        inputs: Mapping[str, Path],
        scratch: Path,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Path]:
        """
        Execute a tool and collect its declared outputs.

        Args:
            template: Command contract
            inputs: Input artifact paths by placeholder name
            scratch: Parent directory for the isolated working directory
            params: Extra run parameters available to the template

        Returns:
            Declared output name -> produced file

        Raises:
            ToolFailure: On nonzero exit, timeout, missing executable or a
                missing declared output
        """
        scratch.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"{template.tool}-", dir=scratch)).resolve()
        outputs = {name: work_dir / filename for name, filename in template.outputs.items()}

        values: Dict[str, Any] = dict(params or {})
        values.update({name: str(Path(path).resolve()) for name, path in inputs.items()})
        values.update({name: str(path) for name, path in outputs.items()})

        command = self.render(template, values)
        if self.tools.container_image:
            command = self._wrap_container(command, work_dir, inputs, params)

        log = logger.bind(tool=template.tool)
        log.info("tool_started", work_dir=str(work_dir))
        log.debug("tool_command", command=" ".join(command))

        start = time.monotonic()
        stdout_target = outputs.get(template.stdout) if template.stdout else None
        try:
            if stdout_target is not None:
                with open(stdout_target, "w") as out:
                    result = subprocess.run(
                        command,
                        cwd=work_dir,
                        stdout=out,
                        stderr=subprocess.PIPE,
                        text=True,
                        timeout=self.tools.timeout_seconds,
                    )
                diagnostics = result.stderr or ""
            else:
                result = subprocess.run(
                    command,
                    cwd=work_dir,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=self.tools.timeout_seconds,
                )
                diagnostics = result.stdout or ""

        except subprocess.TimeoutExpired as exc:
            log.error("tool_timeout", timeout=exc.timeout)
            output = exc.output or ""
            if isinstance(output, bytes):
                output = output.decode(errors="replace")
            raise ToolFailure(
                template.tool,
                -1,
                tail(output, self.tools.diagnostic_lines),
                message=f"{template.tool} timed out after {exc.timeout}s",
            ) from exc

        except FileNotFoundError as exc:
            log.error("tool_not_found", error=str(exc))
            raise ToolFailure(
                template.tool,
                127,
                str(exc),
                message=f"{template.tool} executable not found: {command[0]}",
            ) from exc

        elapsed = time.monotonic() - start
        diagnostics = tail(diagnostics, self.tools.diagnostic_lines)

        if result.returncode != 0:
            log.error("tool_failed", exit_code=result.returncode, duration_s=round(elapsed, 2))
            raise ToolFailure(template.tool, result.returncode, diagnostics)

        missing = [name for name, path in outputs.items() if not path.is_file()]
        if missing:
            log.error("tool_outputs_missing", missing=missing)
            raise ToolFailure(
                template.tool,
                0,
                diagnostics,
                message=f"{template.tool} exited 0 but did not produce: {', '.join(missing)}",
            )

        log.info("tool_completed", duration_s=round(elapsed, 2))
        return outputs
