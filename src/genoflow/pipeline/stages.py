"""
Variant annotation pipeline definition.

Registers the stages of the pipeline on a ``StageGraph``. Each stage wraps one
or two external tool calls; shortcuts on degenerate input (no gVCF marker, no
dbSNP file, nothing passing a filter) are explicit guards that return a
``ContentFallback`` instead of calling the tool.
"""

from __future__ import annotations

import csv
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from ..config.settings import RunConfig
from ..core.exceptions import ContentFallback, PipelineError
from ..core.logging import get_logger
from ..io.vcf import CANONICAL_CHROMOSOMES, count_records, has_gvcf_marker
from ..storage.artifacts import COMPANION_SUFFIXES
from ..tools.adapter import ToolAdapter
from ..tools.commands import (
    ANNOTATE_IDS,
    FEATURE_SCORING,
    FREQUENCY_FILTER,
    GENOTYPE_GVCF,
    HPO_SIMILARITY,
    NORMALIZE,
    PHRANK,
    PREDICT,
    QUALITY_FILTER,
    RENAME_CHROMOSOMES,
    RESTRICT_CHROMOSOMES,
    VEP_ANNOTATE,
    VEP_ASSEMBLY,
)
from .graph import StageContext, StageGraph, StageResult
from .reference import ReferenceCache
from .scatter import CompressedConcat, HeaderOnceConcat, ScatterGatherController, Shard

logger = get_logger(__name__)

# Artifacts supplied by the caller rather than produced by a stage
STATIC_INPUTS = ("input_vcf", "input_hpo", "chromosome_map")

# Published artifact -> results sub-directory
PUBLISHED_ARTIFACTS: Dict[str, str] = {
    "filtered_vcf": "vcf",
    "hpo_similarity_scores": "scoring",
    "phrank_scores": "scoring",
    "annotation_table": "scoring",
    "feature_matrix": "scoring",
    "prediction_matrix": "prediction",
    "confidence_scores": "prediction",
}

ALLOWED_CHROMOSOMES = ",".join(CANONICAL_CHROMOSOMES)


def pass_through(source: Path, scratch: Path) -> Path:
    """Copy ``source`` and its index files unchanged into ``scratch``."""
    target = scratch / source.name
    shutil.copyfile(source, target)
    for suffix in COMPANION_SUFFIXES:
        companion = source.with_name(source.name + suffix)
        if companion.is_file():
            shutil.copyfile(companion, target.with_name(target.name + suffix))
    return target


def count_table_rows(path: Path) -> int:
    """Data rows of a tab-separated table with a header line."""
    try:
        frame = pd.read_csv(
            path,
            sep="\t",
            dtype=str,
            keep_default_na=False,
            quoting=csv.QUOTE_NONE,
            compression="gzip" if str(path).endswith(".gz") else None,
        )
    except pd.errors.EmptyDataError:
        return 0
    return len(frame.index)


class VariantPipeline:
    """
    Stage executors of the variant annotation pipeline.

    Args:
        config: Validated run configuration
        adapter: External tool adapter
        cache: Reference build cache
        shard_workers: Parallel shards in the annotation scatter
    """

    def __init__(
        self,
        config: RunConfig,
        adapter: ToolAdapter,
        cache: ReferenceCache,
        shard_workers: int = 4,
        resume: bool = False,
    ):
        self.config = config
        self.adapter = adapter
        self.cache = cache
        self.scatter = ScatterGatherController(shard_workers=shard_workers, resume=resume)

    @property
    def params(self) -> Dict[str, Any]:
        version = self.config.reference_version
        return {
            "reference_version": version,
            "reference_directory": str(self.config.reference_directory),
            "assembly": VEP_ASSEMBLY[version],
            "vep_cache": str(self.config.reference_directory / version / "vep"),
            "allowed_chromosomes": ALLOWED_CHROMOSOMES,
        }

    def dbsnp_file(self) -> Optional[Path]:
        directory = self.config.reference_directory / self.config.reference_version
        candidates = sorted(directory.glob("dbsnp*.vcf.gz"))
        return candidates[0] if candidates else None

    # ── stages ──────────────────────────────────────────────────────────────

    def reference(self, ctx: StageContext) -> Dict[str, Path]:
        build = self.cache.get_or_build(self.config.reference_version)
        return {"reference_fasta": build.fasta}

    def normalize(self, ctx: StageContext) -> Dict[str, Path]:
        return self.adapter.invoke(NORMALIZE, {"input_vcf": ctx.input("input_vcf")}, ctx.scratch)

    def genotype_call(self, ctx: StageContext) -> StageResult:
        normalized = ctx.input("normalized_vcf")
        if not has_gvcf_marker(normalized):
            return StageResult(
                outputs={"called_vcf": pass_through(normalized, ctx.scratch)},
                fallback=ContentFallback(
                    stage=ctx.stage,
                    reason="input carries no genotype-likelihood marker",
                    action="passed input through unchanged",
                ),
            )
        outputs = self.adapter.invoke(
            GENOTYPE_GVCF,
            {"normalized_vcf": normalized, "reference_fasta": ctx.input("reference_fasta")},
            ctx.scratch,
        )
        return StageResult(outputs=outputs)

    def restrict_chromosomes(self, ctx: StageContext) -> Dict[str, Path]:
        renamed = self.adapter.invoke(
            RENAME_CHROMOSOMES,
            {"called_vcf": ctx.input("called_vcf"), "chromosome_map": ctx.input("chromosome_map")},
            ctx.scratch,
        )
        return self.adapter.invoke(
            RESTRICT_CHROMOSOMES,
            {"renamed_vcf": renamed["renamed_vcf"]},
            ctx.scratch,
            self.params,
        )

    def annotate_ids(self, ctx: StageContext) -> StageResult:
        restricted = ctx.input("restricted_vcf")
        dbsnp = self.dbsnp_file()
        if dbsnp is None:
            return StageResult(
                outputs={"id_vcf": pass_through(restricted, ctx.scratch)},
                fallback=ContentFallback(
                    stage=ctx.stage,
                    reason="no dbSNP file in reference directory",
                    action="passed input through without IDs",
                ),
            )
        outputs = self.adapter.invoke(
            ANNOTATE_IDS, {"restricted_vcf": restricted, "dbsnp_vcf": dbsnp}, ctx.scratch
        )
        return StageResult(outputs=outputs)

    def _filter_with_fallback(self, ctx: StageContext, template, source_name: str, output: str) -> StageResult:
        source = ctx.input(source_name)
        filtered = self.adapter.invoke(template, {source_name: source}, ctx.scratch, self.params)
        if count_records(filtered[output]) == 0:
            return StageResult(
                outputs={output: pass_through(source, ctx.scratch)},
                fallback=ContentFallback(
                    stage=ctx.stage,
                    reason="no record passed the filter",
                    action="using unfiltered input",
                ),
            )
        return StageResult(outputs=filtered)

    def quality_filter(self, ctx: StageContext) -> StageResult:
        return self._filter_with_fallback(ctx, QUALITY_FILTER, "id_vcf", "filtered_vcf")

    def frequency_filter(self, ctx: StageContext) -> StageResult:
        return self._filter_with_fallback(ctx, FREQUENCY_FILTER, "filtered_vcf", "rare_vcf")

    def hpo_similarity(self, ctx: StageContext) -> Dict[str, Path]:
        return self.adapter.invoke(
            HPO_SIMILARITY, {"input_hpo": ctx.input("input_hpo")}, ctx.scratch, self.params
        )

    def phrank(self, ctx: StageContext) -> Dict[str, Path]:
        return self.adapter.invoke(
            PHRANK,
            {"filtered_vcf": ctx.input("filtered_vcf"), "input_hpo": ctx.input("input_hpo")},
            ctx.scratch,
            self.params,
        )

    def annotate_and_score(self, ctx: StageContext) -> Dict[str, Path]:
        reference_fasta = ctx.input("reference_fasta")
        scores = {
            "phrank_scores": ctx.input("phrank_scores"),
            "hpo_similarity_scores": ctx.input("hpo_similarity_scores"),
        }

        def score_shard(shard: Shard, scratch: Path) -> Dict[str, Path]:
            annotated = self.adapter.invoke(
                VEP_ANNOTATE,
                {"shard_vcf": shard.input, "reference_fasta": reference_fasta},
                scratch,
                self.params,
            )
            return self.adapter.invoke(
                FEATURE_SCORING,
                {"annotated_vcf": annotated["annotated_vcf"], **scores},
                scratch,
                self.params,
            )

        return self.scatter.run(
            ctx,
            ctx.input("rare_vcf"),
            score_shard,
            strategies={
                "annotation_table": CompressedConcat(),
                "feature_matrix": HeaderOnceConcat(),
            },
            filenames={
                "annotation_table": FEATURE_SCORING.outputs["annotation_table"],
                "feature_matrix": FEATURE_SCORING.outputs["feature_matrix"],
            },
        )

    def predict(self, ctx: StageContext) -> Dict[str, Path]:
        features = ctx.input("feature_matrix")
        outputs = self.adapter.invoke(PREDICT, {"feature_matrix": features}, ctx.scratch, self.params)

        expected = count_table_rows(features)
        for name, path in outputs.items():
            rows = count_table_rows(path)
            if rows != expected:
                raise PipelineError(
                    f"{name} has {rows} rows for {expected} feature rows", step=ctx.stage
                )
        return outputs

    # ── graph ───────────────────────────────────────────────────────────────

    def register(self, graph: StageGraph) -> StageGraph:
        graph.register_stage("reference", [], ["reference_fasta"], self.reference, persist=False)
        graph.register_stage("normalize", ["input_vcf"], ["normalized_vcf"], self.normalize)
        graph.register_stage(
            "genotype_call", ["normalized_vcf", "reference_fasta"], ["called_vcf"], self.genotype_call
        )
        graph.register_stage(
            "restrict_chromosomes", ["called_vcf", "chromosome_map"], ["restricted_vcf"], self.restrict_chromosomes
        )
        graph.register_stage("annotate_ids", ["restricted_vcf"], ["id_vcf"], self.annotate_ids)
        graph.register_stage("quality_filter", ["id_vcf"], ["filtered_vcf"], self.quality_filter)
        graph.register_stage("hpo_similarity", ["input_hpo"], ["hpo_similarity_scores"], self.hpo_similarity)
        graph.register_stage("phrank", ["filtered_vcf", "input_hpo"], ["phrank_scores"], self.phrank)
        graph.register_stage("frequency_filter", ["filtered_vcf"], ["rare_vcf"], self.frequency_filter)
        graph.register_stage(
            "annotate_and_score",
            ["rare_vcf", "reference_fasta", "phrank_scores", "hpo_similarity_scores"],
            ["annotation_table", "feature_matrix"],
            self.annotate_and_score,
        )
        graph.register_stage(
            "predict", ["feature_matrix"], ["prediction_matrix", "confidence_scores"], self.predict
        )
        return graph


def build_pipeline(
    config: RunConfig,
    adapter: ToolAdapter,
    cache: ReferenceCache,
    max_workers: int = 4,
    shard_workers: int = 4,
    resume: bool = False,
) -> StageGraph:
    """Create the stage graph of the variant annotation pipeline."""
    pipeline = VariantPipeline(config, adapter, cache, shard_workers=shard_workers, resume=resume)
    return pipeline.register(StageGraph(max_workers=max_workers, resume=resume))
