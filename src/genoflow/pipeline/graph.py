"""
Stage Graph

A DAG of named stages. Each stage declares the artifact names it consumes and
produces; edges are derived from those names, so the graph can be checked
before anything runs (no missing producer, no duplicate producer, no cycle).

``StageGraph.run`` executes stages on a thread pool as soon as all their
inputs are complete. When a stage fails every stage downstream of it is
skipped, while independent branches keep running to completion.
"""

from __future__ import annotations

import shutil
import tempfile
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Set, Tuple, Union

from ..core.exceptions import ContentFallback, GenoFlowException, GraphError, PipelineError
from ..core.logging import get_logger
from ..storage.artifacts import ArtifactRef, ArtifactStore, is_within

logger = get_logger(__name__)

StageStatus = Literal["pending", "running", "completed", "cached", "failed", "skipped"]
RunStatus = Literal["completed", "failed"]

DONE_STATUSES = ("completed", "cached")


@dataclass
class StageResult:
    """Outputs produced by a stage executor, plus an optional fallback note."""

    outputs: Dict[str, Path]
    fallback: Optional[ContentFallback] = None


@dataclass
class StageContext:
    """Everything a stage executor may use."""

    run_id: str
    stage: str
    inputs: Dict[str, Path]
    scratch: Path
    store: ArtifactStore
    config: Any = None

    def input(self, name: str) -> Path:
        try:
            return self.inputs[name]
        except KeyError:
            raise PipelineError(f"Stage {self.stage} has no input named {name}", step=self.stage) from None

    def ref(self, output: str, shard: Optional[str] = None) -> ArtifactRef:
        return ArtifactRef(self.run_id, self.stage, output, shard)


StageExecutor = Callable[[StageContext], Union[StageResult, Mapping[str, Path]]]


@dataclass(frozen=True)
class Stage:
    """
    A named unit of work.

    Args:
        name: Unique stage name
        inputs: Artifact names consumed
        outputs: Artifact names produced
        executor: Callable receiving a ``StageContext``
        required: The run fails if this stage does not complete
        persist: Store outputs in the run namespace; ``False`` for outputs
            that already live in durable shared storage (reference build)
    """

    name: str
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    executor: StageExecutor
    required: bool = True
    persist: bool = True


@dataclass
class StageRecord:
    """Execution record of one stage within a run."""

    name: str
    status: StageStatus = "pending"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    fallback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "error_code": self.error_code,
            "fallback": self.fallback,
        }


@dataclass
class GraphRun:
    """Outcome of ``StageGraph.run``."""

    run_id: str
    status: RunStatus
    records: Dict[str, StageRecord]
    artifacts: Dict[str, Path] = field(default_factory=dict)
    errors: Dict[str, GenoFlowException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def failed_stages(self) -> List[str]:
        return [name for name, record in self.records.items() if record.status == "failed"]

    def skipped_stages(self) -> List[str]:
        return [name for name, record in self.records.items() if record.status == "skipped"]

    def first_failure(self) -> Optional[StageRecord]:
        failed = [self.records[name] for name in self.failed_stages()]
        failed.sort(key=lambda record: record.finished_at or datetime.max)
        return failed[0] if failed else None


class StageGraph:
    """Name-wired stage DAG with concurrent execution."""

    def __init__(self, max_workers: int = 4, resume: bool = False):
        self.max_workers = max_workers
        self.resume = resume
        self._stages: Dict[str, Stage] = {}
        self._producers: Dict[str, str] = {}

    # ── construction ────────────────────────────────────────────────────────

    @property
    def stages(self) -> Dict[str, Stage]:
        return dict(self._stages)

    def add(self, stage: Stage) -> Stage:
        """
        Register a stage.

        Raises:
            GraphError: On duplicate stage name, duplicate producer of an
                artifact, or if the stage would close a cycle
        """
        if stage.name in self._stages:
            raise GraphError(f"Stage already registered: {stage.name}", stage.name)
        if not stage.outputs:
            raise GraphError(f"Stage {stage.name} declares no outputs", stage.name)
        if len(set(stage.outputs)) != len(stage.outputs):
            raise GraphError(f"Stage {stage.name} declares an output twice", stage.name)
        for output in stage.outputs:
            if output in self._producers:
                raise GraphError(
                    f"Artifact '{output}' of stage {stage.name} is already produced by {self._producers[output]}",
                    stage.name,
                )

        self._stages[stage.name] = stage
        for output in stage.outputs:
            self._producers[output] = stage.name

        cycle = self._find_cycle()
        if cycle:
            del self._stages[stage.name]
            for output in stage.outputs:
                del self._producers[output]
            raise GraphError(f"Stage {stage.name} would create a cycle: {' -> '.join(cycle)}", stage.name)

        return stage

    def register_stage(
        self,
        name: str,
        inputs: Iterable[str],
        outputs: Iterable[str],
        executor: StageExecutor,
        required: bool = True,
        persist: bool = True,
    ) -> Stage:
        return self.add(
            Stage(
                name=name,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                executor=executor,
                required=required,
                persist=persist,
            )
        )

    # ── structure ───────────────────────────────────────────────────────────

    def producer(self, artifact: str) -> Optional[str]:
        return self._producers.get(artifact)

    def dependencies(self, name: str) -> Set[str]:
        """Stages whose outputs ``name`` consumes."""
        return {
            self._producers[artifact]
            for artifact in self._stages[name].inputs
            if artifact in self._producers
        }

    def dependents(self, name: str) -> Set[str]:
        return {other for other in self._stages if name in self.dependencies(other)}

    def descendants(self, name: str) -> Set[str]:
        """All stages depending directly or transitively on ``name``."""
        seen: Set[str] = set()
        frontier = [name]
        while frontier:
            for child in self.dependents(frontier.pop()):
                if child not in seen:
                    seen.add(child)
                    frontier.append(child)
        return seen

    def _find_cycle(self) -> Optional[List[str]]:
        white, grey, black = 0, 1, 2
        color = {name: white for name in self._stages}
        stack: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            color[name] = grey
            stack.append(name)
            for dep in sorted(self.dependencies(name)):
                if color[dep] == grey:
                    return stack[stack.index(dep):] + [dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[name] = black
            return None

        for name in self._stages:
            if color[name] == white:
                found = visit(name)
                if found:
                    return found
        return None

    def topological_order(self) -> List[str]:
        """Stages in dependency order, ties broken by registration order."""
        remaining = {name: set(self.dependencies(name)) for name in self._stages}
        order: List[str] = []
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                raise GraphError("Stage graph contains a cycle")
            for name in ready:
                order.append(name)
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def validate(self, static_inputs: Iterable[str] = ()) -> None:
        """
        Check that every input has exactly one source and the graph is acyclic.

        Args:
            static_inputs: Artifact names supplied by the caller of ``run``

        Raises:
            GraphError: On a missing producer, a static input that is also
                produced by a stage, or a cycle
        """
        static = set(static_inputs)
        shadowed = sorted(static & set(self._producers))
        if shadowed:
            artifact = shadowed[0]
            raise GraphError(
                f"Artifact '{artifact}' is both a static input and produced by {self._producers[artifact]}",
                self._producers[artifact],
            )
        for stage in self._stages.values():
            for artifact in stage.inputs:
                if artifact not in self._producers and artifact not in static:
                    raise GraphError(
                        f"Input '{artifact}' of stage {stage.name} has no producer",
                        stage.name,
                    )
        cycle = self._find_cycle()
        if cycle:
            raise GraphError(f"Stage graph contains a cycle: {' -> '.join(cycle)}")

    # ── execution ───────────────────────────────────────────────────────────

    def run(
        self,
        run_id: str,
        store: ArtifactStore,
        static_inputs: Optional[Mapping[str, Path]] = None,
        config: Any = None,
    ) -> GraphRun:
        """
        Execute all stages in dependency order.

        Args:
            run_id: Run namespace for produced artifacts
            store: Artifact store
            static_inputs: Artifact name -> path of inputs not produced by a stage
            config: Run configuration handed to every executor

        Returns:
            GraphRun with per-stage records and resolved artifact paths

        Raises:
            GraphError: If the graph is invalid (nothing is executed)
        """
        static_inputs = dict(static_inputs or {})
        self.validate(static_inputs)

        order = self.topological_order()
        records = {name: StageRecord(name) for name in order}
        artifacts: Dict[str, Path] = {name: Path(path) for name, path in static_inputs.items()}
        errors: Dict[str, GenoFlowException] = {}
        pending = list(order)
        running: Dict[Future, str] = {}

        scratch_root = store.run_dir(run_id) / ".scratch"
        scratch_root.mkdir(parents=True, exist_ok=True)
        log = logger.bind(run_id=run_id)
        log.info("graph_run_started", stages=len(order), workers=self.max_workers)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stage") as pool:
            while True:
                for name in list(pending):
                    stage = self._stages[name]
                    if all(artifact in artifacts for artifact in stage.inputs):
                        pending.remove(name)
                        record = records[name]
                        record.status = "running"
                        record.started_at = datetime.now()
                        inputs = {artifact: artifacts[artifact] for artifact in stage.inputs}
                        log.info("stage_started", stage=name)
                        future = pool.submit(
                            self._execute, stage, run_id, store, inputs, config, scratch_root
                        )
                        running[future] = name

                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    record = records[name]
                    record.finished_at = datetime.now()
                    record.duration_seconds = round(
                        (record.finished_at - record.started_at).total_seconds(), 3
                    )
                    try:
                        outputs, fallback, cached = future.result()
                    except Exception as exc:
                        error = exc if isinstance(exc, GenoFlowException) else PipelineError(
                            f"{type(exc).__name__}: {exc}", step=name
                        )
                        errors[name] = error
                        record.status = "failed"
                        record.error = error.message
                        record.error_code = error.code
                        if isinstance(exc, GenoFlowException):
                            log.error("stage_failed", stage=name, code=error.code, error=error.message)
                        else:
                            log.exception("stage_crashed", stage=name)
                        for child in sorted(self.descendants(name)):
                            if child in pending:
                                pending.remove(child)
                                records[child].status = "skipped"
                                records[child].error = f"upstream stage {name} failed"
                                log.warning("stage_skipped", stage=child, upstream=name)
                        continue

                    artifacts.update(outputs)
                    record.status = "cached" if cached else "completed"
                    if fallback is not None:
                        record.fallback = str(fallback)
                    log.info("stage_completed", stage=name, cached=cached, duration_s=record.duration_seconds)

        for name in pending:
            records[name].status = "skipped"
            records[name].error = records[name].error or "inputs never became available"

        shutil.rmtree(scratch_root, ignore_errors=True)

        incomplete_required = [
            name
            for name, record in records.items()
            if self._stages[name].required and record.status not in DONE_STATUSES
        ]
        status: RunStatus = "failed" if incomplete_required else "completed"
        log.info(
            "graph_run_finished",
            status=status,
            failed=[name for name, r in records.items() if r.status == "failed"],
            skipped=[name for name, r in records.items() if r.status == "skipped"],
        )
        return GraphRun(run_id=run_id, status=status, records=records, artifacts=artifacts, errors=errors)

    def _execute(
        self,
        stage: Stage,
        run_id: str,
        store: ArtifactStore,
        inputs: Dict[str, Path],
        config: Any,
        scratch_root: Path,
    ) -> Tuple[Dict[str, Path], Optional[ContentFallback], bool]:
        refs = {output: ArtifactRef(run_id, stage.name, output) for output in stage.outputs}

        if self.resume and stage.persist and all(store.exists(ref) for ref in refs.values()):
            return {output: store.get(ref) for output, ref in refs.items()}, None, True

        scratch = Path(tempfile.mkdtemp(prefix=f"{stage.name}-", dir=scratch_root))
        try:
            context = StageContext(
                run_id=run_id,
                stage=stage.name,
                inputs=inputs,
                scratch=scratch,
                store=store,
                config=config,
            )
            start = time.monotonic()
            result = stage.executor(context)
            if not isinstance(result, StageResult):
                result = StageResult(outputs=dict(result))

            declared = set(stage.outputs)
            produced = set(result.outputs)
            if produced != declared:
                raise PipelineError(
                    f"Stage {stage.name} produced {sorted(produced)}, declared {sorted(declared)}",
                    step=stage.name,
                )

            if result.fallback is not None:
                logger.warning(
                    "content_fallback",
                    run_id=run_id,
                    stage=stage.name,
                    reason=result.fallback.reason,
                    action=result.fallback.action,
                )

            if stage.persist:
                resolved = {}
                for output, path in result.outputs.items():
                    store.put(refs[output], Path(path), move=is_within(path, scratch))
                    resolved[output] = store.get(refs[output])
            else:
                resolved = {output: Path(path) for output, path in result.outputs.items()}
                missing = [output for output, path in resolved.items() if not path.exists()]
                if missing:
                    raise PipelineError(f"Stage {stage.name} outputs do not exist: {missing}", step=stage.name)

            logger.debug("stage_executed", run_id=run_id, stage=stage.name, seconds=round(time.monotonic() - start, 3))
            return resolved, result.fallback, False
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
