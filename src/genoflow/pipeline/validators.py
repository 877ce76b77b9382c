"""
Pipeline Validators Module for GenoFlow

Checks run parameters before any stage is started and turns them into the
explicit ``RunConfig`` handed to every stage.
"""

from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..config.settings import REFERENCE_VERSIONS, RunConfig
from ..core.exceptions import ValidationError
from ..core.logging import get_logger

logger = get_logger(__name__)

REQUIRED_PARAMETERS = ("input_vcf", "input_hpo", "reference_directory", "reference_version")

VCF_EXTENSIONS = (".vcf", ".vcf.gz")
HPO_EXTENSIONS = (".hpo", ".txt")

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

DEFAULT_OUTPUT_DIRECTORY = "results"


class FileValidator:
    """Validates input paths."""

    @staticmethod
    def validate_file_exists(file_path: Path) -> Tuple[bool, str]:
        """
        Check if file exists and is readable.

        Args:
            file_path: Path to file

        Returns:
            Tuple of (valid, message)
        """
        if not file_path.exists():
            return False, f"File does not exist: {file_path}"

        if not file_path.is_file():
            return False, f"Path is not a file: {file_path}"

        if not os.access(file_path, os.R_OK):
            return False, f"File is not readable: {file_path}"

        return True, "File is valid"

    @staticmethod
    def validate_extension(file_path: Path, allowed: Tuple[str, ...]) -> Tuple[bool, str]:
        """
        Validate file format based on the name ending.

        Args:
            file_path: Path to file
            allowed: Accepted endings, e.g. ``(".vcf", ".vcf.gz")``

        Returns:
            Tuple of (valid, message)
        """
        name = file_path.name.lower()
        if any(name.endswith(ext) for ext in allowed):
            return True, f"Valid file format: {file_path.name}"
        return False, f"File must end in {' or '.join(allowed)}: {file_path.name}"

    @staticmethod
    def validate_directory(dir_path: Path) -> Tuple[bool, str]:
        """Check that ``dir_path`` exists and is a directory, not a file."""
        if not dir_path.exists():
            return False, f"Directory does not exist: {dir_path}"
        if not dir_path.is_dir():
            return False, f"Path is not a directory: {dir_path}"
        return True, "Directory is valid"


class ParameterValidator:
    """Validates non-path pipeline parameters."""

    @staticmethod
    def validate_reference_version(version: str) -> Tuple[bool, str]:
        if version not in REFERENCE_VERSIONS:
            return False, f"Reference version must be one of {', '.join(REFERENCE_VERSIONS)}, got '{version}'"
        return True, f"Valid reference version: {version}"

    @staticmethod
    def validate_run_id(run_id: str) -> Tuple[bool, str]:
        if not RUN_ID_PATTERN.match(run_id):
            return False, f"Run id may only contain letters, digits, '.', '_' and '-': '{run_id}'"
        return True, f"Valid run id: {run_id}"


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def default_run_id(input_vcf: Path) -> str:
    """``<vcf stem>_<timestamp>`` with unsafe characters replaced."""
    stem = input_vcf.name
    for ext in VCF_EXTENSIONS[::-1]:
        if stem.lower().endswith(ext):
            stem = stem[: -len(ext)]
            break
    stem = re.sub(r"[^A-Za-z0-9._-]", "_", stem).lstrip("._-") or "run"
    return f"{stem}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"


class PipelineValidator:
    """Validates the complete parameter set of a run."""

    def __init__(self) -> None:
        self.errors: List[Dict[str, str]] = []

    def _fail(self, parameter: str, reason: str) -> None:
        self.errors.append({"parameter": parameter, "reason": reason})

    def _check(self, parameter: str, result: Tuple[bool, str]) -> bool:
        valid, message = result
        if not valid:
            self._fail(parameter, message)
        return valid

    def validate_parameters(self, params: Mapping[str, Any]) -> RunConfig:
        """
        Validate all run parameters.

        Every parameter is checked so the error carries complete diagnostics;
        the raised error names the first offending parameter.

        Args:
            params: Parameter name -> value

        Returns:
            Validated run configuration

        Raises:
            ValidationError: If any parameter is missing or invalid
        """
        self.errors = []

        for name in REQUIRED_PARAMETERS:
            if _is_blank(params.get(name)):
                self._fail(name, "Parameter is required")

        def path_param(name: str) -> Optional[Path]:
            value = params.get(name)
            return None if _is_blank(value) else Path(str(value)).expanduser()

        input_vcf = path_param("input_vcf")
        if input_vcf is not None:
            if self._check("input_vcf", FileValidator.validate_file_exists(input_vcf)):
                self._check("input_vcf", FileValidator.validate_extension(input_vcf, VCF_EXTENSIONS))

        input_hpo = path_param("input_hpo")
        if input_hpo is not None:
            if self._check("input_hpo", FileValidator.validate_file_exists(input_hpo)):
                self._check("input_hpo", FileValidator.validate_extension(input_hpo, HPO_EXTENSIONS))

        reference_directory = path_param("reference_directory")
        if reference_directory is not None:
            self._check("reference_directory", FileValidator.validate_directory(reference_directory))

        reference_version = params.get("reference_version")
        if not _is_blank(reference_version):
            reference_version = str(reference_version)
            self._check("reference_version", ParameterValidator.validate_reference_version(reference_version))

        chromosome_map = path_param("chromosome_map")
        if chromosome_map is not None:
            self._check("chromosome_map", FileValidator.validate_file_exists(chromosome_map))

        output_directory = path_param("output_directory") or Path(DEFAULT_OUTPUT_DIRECTORY)
        if output_directory.exists() and not output_directory.is_dir():
            self._fail("output_directory", f"Path is not a directory: {output_directory}")

        run_id = params.get("run_id")
        if _is_blank(run_id):
            run_id = default_run_id(input_vcf) if input_vcf is not None else None
        else:
            run_id = str(run_id).strip()
            self._check("run_id", ParameterValidator.validate_run_id(run_id))

        if self.errors:
            first = self.errors[0]
            for error in self.errors:
                logger.error("invalid_parameter", parameter=error["parameter"], reason=error["reason"])
            raise ValidationError(
                f"Invalid parameter '{first['parameter']}': {first['reason']}",
                field=first["parameter"],
                errors=list(self.errors),
            )

        output_directory.mkdir(parents=True, exist_ok=True)

        config = RunConfig(
            run_id=run_id,
            input_vcf=input_vcf.resolve(),
            input_hpo=input_hpo.resolve(),
            reference_directory=reference_directory.resolve(),
            reference_version=reference_version,
            output_directory=output_directory.resolve(),
            chromosome_map=chromosome_map.resolve() if chromosome_map else None,
        )
        logger.info("parameters_validated", run_id=config.run_id, reference_version=config.reference_version)
        return config


def validate_parameters(params: Mapping[str, Any]) -> RunConfig:
    """Shortcut for ``PipelineValidator().validate_parameters(params)``."""
    return PipelineValidator().validate_parameters(params)
