"""
GenoFlow Pipeline Module
Stage graph, scatter/gather, reference cache and the variant annotation pipeline.
"""

from .graph import GraphRun, Stage, StageContext, StageGraph, StageRecord, StageResult
from .orchestrator import PipelineOrchestrator, PipelineResult
from .reference import ReferenceBuild, ReferenceBuilder, ReferenceCache
from .scatter import (
    CompressedConcat,
    HeaderOnceConcat,
    ScatterGatherController,
    Shard,
    ShardSet,
    gather,
    scatter,
)
from .stages import build_pipeline
from .validators import PipelineValidator, validate_parameters

__all__ = [
    "GraphRun",
    "Stage",
    "StageContext",
    "StageGraph",
    "StageRecord",
    "StageResult",
    "PipelineOrchestrator",
    "PipelineResult",
    "ReferenceBuild",
    "ReferenceBuilder",
    "ReferenceCache",
    "CompressedConcat",
    "HeaderOnceConcat",
    "ScatterGatherController",
    "Shard",
    "ShardSet",
    "gather",
    "scatter",
    "build_pipeline",
    "PipelineValidator",
    "validate_parameters",
]
