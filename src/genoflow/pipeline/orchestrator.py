"""
Pipeline Orchestrator for GenoFlow

Runs one variant annotation job: validate parameters, execute the stage graph,
publish the final artifacts by category and write ``pipeline_result.json``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from ..config.settings import RunConfig, Settings
from ..core.exceptions import GenoFlowException, ToolFailure, ValidationError
from ..core.logging import bind_context, clear_context, get_logger
from ..io.vcf import write_chromosome_map
from ..storage.artifacts import ArtifactRef, ArtifactStore
from ..tools.adapter import ToolAdapter
from .graph import GraphRun, StageRecord
from .reference import ReferenceBuilder, ReferenceCache
from .stages import PUBLISHED_ARTIFACTS, build_pipeline
from .validators import PipelineValidator

logger = get_logger(__name__)

PipelineStatus = Literal["completed", "failed"]

RESULT_FILE = "pipeline_result.json"


@dataclass
class PipelineResult:
    """Container for pipeline execution results."""

    run_id: Optional[str]
    status: PipelineStatus
    start_time: datetime
    end_time: Optional[datetime] = None

    reference_version: Optional[str] = None
    results_dir: Optional[Path] = None

    # Artifact name -> published file
    published: Dict[str, Path] = field(default_factory=dict)
    stages: Dict[str, StageRecord] = field(default_factory=dict)

    # First failure, for the single diagnostic message
    failed_stage: Optional[str] = None
    failed_parameter: Optional[str] = None
    error: Optional[GenoFlowException] = None

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        return 2 if isinstance(self.error, ValidationError) else 1

    @property
    def message(self) -> str:
        """One line naming the failing stage or parameter and the cause."""
        if self.ok:
            return f"Run {self.run_id} completed; results in {self.results_dir}"
        cause = self.error.message if self.error else (self.errors[0] if self.errors else "unknown error")
        if self.failed_parameter:
            if isinstance(self.error, ValidationError):
                cause = next(
                    (e["reason"] for e in self.error.errors if e["parameter"] == self.failed_parameter),
                    cause,
                )
            return f"Validation failed for parameter '{self.failed_parameter}': {cause}"
        if self.failed_stage:
            text = f"Stage {self.failed_stage} failed: {cause}"
            if isinstance(self.error, ToolFailure) and self.error.diagnostics:
                last = self.error.diagnostics.strip().splitlines()[-1]
                text = f"{text} ({last})"
            return text
        return f"Run {self.run_id} failed: {cause}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "status": self.status,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": (self.end_time - self.start_time).total_seconds() if self.end_time else None,
            "reference_version": self.reference_version,
            "results_dir": str(self.results_dir) if self.results_dir else None,
            "published": {name: str(path) for name, path in self.published.items()},
            "stages": {name: record.to_dict() for name, record in self.stages.items()},
            "failed_stage": self.failed_stage,
            "failed_parameter": self.failed_parameter,
            "error": self.error.to_dict() if self.error else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "message": self.message,
        }

    def save(self, output_file: Path) -> None:
        """Save results to JSON file."""
        with open(output_file, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


class PipelineOrchestrator:
    """
    Orchestrates the complete variant annotation pipeline.

    Coordinates validation, the stage graph and publishing of results.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[ArtifactStore] = None,
        adapter: Optional[ToolAdapter] = None,
        cache: Optional[ReferenceCache] = None,
    ):
        """
        Initialize pipeline orchestrator.

        Args:
            settings: Application settings
            store: Artifact store (default: under ``settings.work_root``)
            adapter: Tool adapter (default: from ``settings.tools``)
            cache: Reference cache (default: ``ReferenceBuilder`` per run)
        """
        self.settings = settings
        self.store = store or ArtifactStore(settings.work_root)
        self.adapter = adapter or ToolAdapter(settings.tools)
        self.cache = cache

    def _reference_cache(self, config: RunConfig) -> ReferenceCache:
        if self.cache is not None:
            return self.cache
        builder = ReferenceBuilder(self.adapter, self.settings.reference, config.reference_directory)
        return ReferenceCache(self.store, builder)

    def _static_inputs(self, config: RunConfig) -> Dict[str, Path]:
        chromosome_map = config.chromosome_map
        if chromosome_map is None:
            ref = ArtifactRef(config.run_id, "inputs", "chromosome_map")
            if not self.store.exists(ref):
                draft = self.store.run_dir(config.run_id) / "chromosome_map.txt"
                draft.parent.mkdir(parents=True, exist_ok=True)
                self.store.put(ref, write_chromosome_map(draft), move=True)
            chromosome_map = self.store.get(ref)
        return {
            "input_vcf": config.input_vcf,
            "input_hpo": config.input_hpo,
            "chromosome_map": chromosome_map,
        }

    def run_pipeline(self, params: Mapping[str, Any]) -> PipelineResult:
        """
        Run the pipeline for one set of parameters.

        Args:
            params: Run parameters (see ``PipelineValidator``)

        Returns:
            PipelineResult; ``pipeline_result.json`` is written to the results
            directory whenever parameters were valid
        """
        result = PipelineResult(run_id=None, status="failed", start_time=datetime.now())

        try:
            config = PipelineValidator().validate_parameters(params)
        except ValidationError as exc:
            result.end_time = datetime.now()
            result.error = exc
            result.failed_parameter = exc.field
            result.errors = [f"{e['parameter']}: {e['reason']}" for e in exc.errors] or [exc.message]
            logger.error("validation_failed", parameter=exc.field, error=exc.message)
            return result

        result.run_id = config.run_id
        result.reference_version = config.reference_version
        result.results_dir = config.results_directory
        bind_context(run_id=config.run_id, reference_version=config.reference_version)
        logger.info("pipeline_started", input_vcf=str(config.input_vcf))

        try:
            graph = build_pipeline(
                config,
                self.adapter,
                self._reference_cache(config),
                max_workers=self.settings.max_workers,
                shard_workers=self.settings.shard_workers,
                resume=self.settings.resume,
            )
            graph_run = graph.run(config.run_id, self.store, self._static_inputs(config), config=config)
            self._collect(result, graph_run)

            if graph_run.ok:
                self._publish(result, config, graph)
                result.status = "completed"

        except GenoFlowException as exc:
            result.error = exc
            result.errors.append(exc.message)
            logger.error("pipeline_failed", code=exc.code, error=exc.message)

        finally:
            result.end_time = datetime.now()
            config.results_directory.mkdir(parents=True, exist_ok=True)
            result.save(config.results_directory / RESULT_FILE)
            logger.info(
                "pipeline_finished",
                status=result.status,
                duration_s=round((result.end_time - result.start_time).total_seconds(), 2),
            )
            clear_context()

        return result

    def _collect(self, result: PipelineResult, graph_run: GraphRun) -> None:
        result.stages = graph_run.records
        result.warnings = [record.fallback for record in graph_run.records.values() if record.fallback]
        for name in graph_run.failed_stages():
            result.errors.append(f"{name}: {graph_run.records[name].error}")
        for name in graph_run.skipped_stages():
            result.warnings.append(f"{name}: skipped ({graph_run.records[name].error})")

        first = graph_run.first_failure()
        if first is not None:
            result.failed_stage = first.name
            result.error = graph_run.errors.get(first.name)

    def _publish(self, result: PipelineResult, config: RunConfig, graph) -> None:
        for artifact, category in PUBLISHED_ARTIFACTS.items():
            ref = ArtifactRef(config.run_id, graph.producer(artifact), artifact)
            result.published[artifact] = self.store.publish(ref, config.results_directory / category)
        logger.info("results_published", results_dir=str(config.results_directory), count=len(result.published))
